"""
Fulfillment submission.

Every request holding a nonce is answered with exactly one transaction from
its designated wallet:
- fulfill, when the API call resolved and the client callback accepts it
- fail, when the API call could not be made or the callback would revert
- fulfillWithdrawal, for withdrawal requests

Requests of one wallet are sent one after another in nonce order. Different
wallets are handled concurrently. A request that cannot be sent is marked
errored and never stops the requests queued after it.
"""

import asyncio
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Tuple

import structlog
from eth_abi.exceptions import DecodingError
from eth_account.signers.local import LocalAccount

from rrp_node.core.errors import (
    InsufficientFundsError,
    ProtocolMismatchError,
    TransactionRevertedError,
    classify_error,
)
from rrp_node.protocol.abi import FULFILL

from .models import (
    ApiCallRequest,
    Fulfillment,
    FullRequest,
    PreparedTransaction,
    RegularRequest,
    Request,
    RequestError,
    RequestErrorCode,
    RequestStatus,
    WithdrawalRequest,
)
from .state import ProviderState, update
from .tx_builder import TransactionBuilder
from .wallet import derive_sponsor_wallet


logger = structlog.stdlib.get_logger("execution.fulfillments")


def sign_transaction(account: LocalAccount, tx: PreparedTransaction) -> bytes:
    """Sign a prepared transaction and return the raw bytes to broadcast."""
    signed = account.sign_transaction(tx.to_dict())
    return signed.raw_transaction


def is_submittable(request: Request) -> bool:
    return request.status == RequestStatus.AUTHORIZED and request.nonce is not None


def _error_code(error: Exception) -> RequestErrorCode:
    if isinstance(error, InsufficientFundsError):
        return RequestErrorCode.INSUFFICIENT_FUNDS
    if isinstance(error, TransactionRevertedError):
        return RequestErrorCode.SIMULATION_REVERTED
    return RequestErrorCode.SUBMISSION_FAILED


class FulfillmentSubmitter:
    """
    Prepares, signs and broadcasts the transactions of one provider state.

    Gas target and wallet snapshots come from the earlier pipeline stages
    and are read-only here.
    """

    def __init__(self, state: ProviderState):
        if state.gas_target is None:
            raise ValueError("Cannot submit fulfillments without a gas target")
        self.state = state
        self.rpc = state.rpc
        self.chain_id = int(state.settings.chain_id)
        self.contract_address = state.settings.contract_address
        self.provider_id = state.settings.provider_id
        self.gas_target = state.gas_target

    # ---------------------------
    # Transaction preparation
    # ---------------------------
    async def prepare_api_call_response(
        self, request: ApiCallRequest
    ) -> PreparedTransaction:
        """fulfill when the response is accepted by a static call, fail otherwise."""
        if request.response is None:
            reason = request.error.message if request.error else "API call failed"
            return TransactionBuilder.build_fail(
                self.chain_id,
                self.contract_address,
                self.provider_id,
                request,
                request.nonce,
                self.gas_target,
                reason=reason,
            )

        tx = TransactionBuilder.build_fulfill(
            self.chain_id,
            self.contract_address,
            self.provider_id,
            request,
            request.nonce,
            self.gas_target,
        )

        output = await self.rpc.call(tx.to_call_dict())
        try:
            call_success, _ = FULFILL.decode_output(output)
        except DecodingError as e:
            raise TransactionRevertedError(
                f"Unexpected fulfill return data: {output!r}", request_id=request.id
            ) from e

        if call_success:
            return tx

        logger.info(
            "fulfillment_callback_would_revert",
            request_id=request.id,
            **self.state.log_context,
        )
        return TransactionBuilder.build_fail(
            self.chain_id,
            self.contract_address,
            self.provider_id,
            request,
            request.nonce,
            self.gas_target,
            reason="Fulfill callback would revert",
        )

    async def prepare_withdrawal(self, request: WithdrawalRequest) -> PreparedTransaction:
        """
        Withdraw the whole designated wallet balance minus the transaction fee.

        Gas is estimated for this call instead of using the fulfillment limit.
        """
        wallet = self.state.wallet(request.designated_wallet)
        if wallet is None:
            raise ValueError(f"No balance observed for {request.designated_wallet}")

        probe = TransactionBuilder.build_fulfill_withdrawal(
            self.chain_id,
            self.contract_address,
            self.provider_id,
            request,
            request.nonce,
            self.gas_target,
        )
        gas_limit = await self.rpc.estimate_gas(probe.to_call_dict())
        gas_target = self.gas_target.with_gas_limit(gas_limit)

        fee = gas_limit * gas_target.max_cost_per_gas
        value = wallet.balance - fee
        if value <= 0:
            raise InsufficientFundsError(
                f"Balance {wallet.balance} of {wallet.address} does not cover fee {fee}",
                required=fee,
                available=wallet.balance,
            )

        return TransactionBuilder.build_fulfill_withdrawal(
            self.chain_id,
            self.contract_address,
            self.provider_id,
            request,
            request.nonce,
            gas_target,
            value=value,
        )

    async def prepare(self, request: Request) -> PreparedTransaction:
        match request:
            case RegularRequest() | FullRequest():
                return await self.prepare_api_call_response(request)
            case WithdrawalRequest():
                return await self.prepare_withdrawal(request)
        raise TypeError(f"Unsupported request type: {type(request).__name__}")

    # ---------------------------
    # Submission
    # ---------------------------
    def _signer(self, request: Request) -> LocalAccount:
        account = derive_sponsor_wallet(self.state.settings.mnemonic, request.sponsor_index)
        if account.address.lower() != request.designated_wallet.lower():
            # The contract would reject the call as coming from the wrong wallet
            raise ProtocolMismatchError(
                f"Sponsor index {request.sponsor_index} derives {account.address}, "
                f"not designated wallet {request.designated_wallet}",
                request_id=request.id,
            )
        return account

    async def submit_request(self, request: Request) -> Request:
        """
        Send the transaction answering one request.

        Returns:
            The request, submitted with its transaction hash, or errored
        """
        try:
            account = self._signer(request)
            tx = await self.prepare(request)
            tx_hash = await self.rpc.send_raw_transaction(sign_transaction(account, tx))
        except Exception as e:  # noqa: BLE001
            context = classify_error(e)
            logger.warning(
                "fulfillment_errored",
                request_id=request.id,
                wallet=request.designated_wallet,
                nonce=request.nonce,
                category=context.category.value,
                error=str(e),
                **self.state.log_context,
            )
            return replace(
                request,
                status=RequestStatus.ERRORED,
                error=RequestError(code=_error_code(e), message=str(e)),
            )

        logger.info(
            "fulfillment_submitted",
            request_id=request.id,
            function=tx.metadata.get("function"),
            wallet=tx.from_address,
            nonce=tx.nonce,
            transaction_hash=tx_hash,
            **self.state.log_context,
        )
        return replace(
            request,
            status=RequestStatus.SUBMITTED,
            fulfillment=Fulfillment(transaction_hash=tx_hash),
        )

    async def submit_wallet_group(
        self, group: List[Tuple[int, Request]]
    ) -> List[Tuple[int, Request]]:
        """Submit one wallet's requests strictly in nonce order."""
        results = []
        for position, request in sorted(group, key=lambda pair: pair[1].nonce):
            results.append((position, await self.submit_request(request)))
        return results

    async def submit_all(self) -> Tuple[Request, ...]:
        groups: Dict[str, List[Tuple[int, Request]]] = defaultdict(list)
        for position, request in enumerate(self.state.requests):
            if is_submittable(request):
                groups[request.designated_wallet.lower()].append((position, request))

        group_results = await asyncio.gather(
            *(self.submit_wallet_group(group) for group in groups.values())
        )

        requests = list(self.state.requests)
        for results in group_results:
            for position, request in results:
                requests[position] = request
        return tuple(requests)


async def submit(state: ProviderState) -> ProviderState:
    """Pipeline stage: broadcast every request that holds a nonce."""
    requests = await FulfillmentSubmitter(state).submit_all()
    return update(state, requests=requests)
