"""
Nonce assignment for designated wallets.

Each designated wallet signs its own transactions, so nonces are scoped per
wallet. At cycle start the wallet's transaction count is read once and the
eligible requests of that wallet get count, count + 1, ... in the order they
were discovered on-chain. Nothing is reserved across cycles: the chain's
transaction count is the only source of truth.
"""

import asyncio
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List, Sequence, Tuple

import structlog

from rrp_node.core.errors import RpcError

from .models import (
    FAILABLE_ERROR_CODES,
    FullRequest,
    RegularRequest,
    Request,
    RequestStatus,
    WalletSnapshot,
    WithdrawalRequest,
)
from .rpc import JsonRpcClient
from .state import ProviderState, update


logger = structlog.stdlib.get_logger("execution.nonces")


def is_well_formed(request: Request) -> bool:
    if not request.id or not request.designated_wallet:
        return False
    match request:
        case RegularRequest() | FullRequest():
            return bool(request.fulfill_address and request.fulfill_function_id)
        case WithdrawalRequest():
            return bool(request.destination)
    return False


def is_actionable(request: Request) -> bool:
    """Whether the submitter has something to send for this request."""
    match request:
        case RegularRequest() | FullRequest():
            if request.response is not None:
                return True
            return request.error is not None and request.error.code in FAILABLE_ERROR_CODES
        case WithdrawalRequest():
            return True
    return False


def is_eligible(request: Request) -> bool:
    """
    A request takes a nonce only when it is authorized, not terminal, not
    already handled this cycle, well formed and has an outcome to submit.
    """
    return (
        request.status == RequestStatus.AUTHORIZED
        and not request.is_terminal
        and request.nonce is None
        and is_well_formed(request)
        and is_actionable(request)
    )


def discovery_order(indexed: Iterable[Tuple[int, Request]]) -> List[Tuple[int, Request]]:
    """Sort (position, request) pairs by on-chain log position; position breaks ties."""
    return sorted(indexed, key=lambda pair: (pair[1].block_number, pair[1].log_index, pair[0]))


def designated_wallets(requests: Iterable[Request]) -> List[str]:
    """Distinct designated wallets of the eligible requests, first-seen order."""
    seen: Dict[str, str] = {}
    for request in requests:
        if is_eligible(request):
            seen.setdefault(request.designated_wallet.lower(), request.designated_wallet)
    return list(seen.values())


def assign(
    requests: Sequence[Request],
    wallets: Iterable[WalletSnapshot],
) -> Tuple[Request, ...]:
    """
    Attach nonces to eligible requests.

    Args:
        requests: Request set of the cycle, in any order
        wallets: Snapshots of the wallets whose lookups succeeded

    Returns:
        The requests in their input order. Eligible requests whose wallet has
        a snapshot carry a nonce; everything else passes through untouched.
    """
    base_nonces = {w.address.lower(): w.transaction_count for w in wallets}

    positions: Dict[str, List[int]] = defaultdict(list)
    for position, request in discovery_order(enumerate(requests)):
        wallet = request.designated_wallet.lower() if request.designated_wallet else ""
        if is_eligible(request) and wallet in base_nonces:
            positions[wallet].append(position)

    result = list(requests)
    for wallet, group in positions.items():
        for offset, position in enumerate(group):
            result[position] = replace(result[position], nonce=base_nonces[wallet] + offset)
    return tuple(result)


async def fetch_wallet_snapshot(rpc: JsonRpcClient, address: str) -> WalletSnapshot:
    transaction_count, balance = await asyncio.gather(
        rpc.get_transaction_count(address),
        rpc.get_balance(address),
    )
    return WalletSnapshot(address=address, transaction_count=transaction_count, balance=balance)


async def fetch_wallet_snapshots(
    state: ProviderState,
    addresses: Sequence[str],
) -> Tuple[WalletSnapshot, ...]:
    """
    Look up every wallet concurrently.

    A wallet whose transaction count or balance cannot be read is left out,
    which keeps all of its requests unassigned until the next cycle.
    """
    if not addresses:
        return ()

    results = await asyncio.gather(
        *(fetch_wallet_snapshot(state.rpc, address) for address in addresses),
        return_exceptions=True,
    )

    snapshots: List[WalletSnapshot] = []
    for address, result in zip(addresses, results):
        if isinstance(result, RpcError):
            logger.warning(
                "wallet_lookup_failed",
                wallet=address,
                error=str(result),
                **state.log_context,
            )
            continue
        if isinstance(result, BaseException):
            raise result
        snapshots.append(result)
    return tuple(snapshots)


async def assign_nonces(state: ProviderState) -> ProviderState:
    """Pipeline stage: read wallet state and attach nonces to eligible requests."""
    addresses = designated_wallets(state.requests)
    snapshots = await fetch_wallet_snapshots(state, addresses)
    requests = assign(state.requests, snapshots)

    assigned = sum(
        1 for before, after in zip(state.requests, requests)
        if before.nonce is None and after.nonce is not None
    )
    logger.info(
        "nonces_assigned",
        wallets=len(snapshots),
        wallets_skipped=len(addresses) - len(snapshots),
        assigned=assigned,
        **state.log_context,
    )
    return update(state, requests=requests, wallets=snapshots)
