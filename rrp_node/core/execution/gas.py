"""
Gas pricing for fulfillment transactions.

Two fee markets are supported and a chain uses exactly one of them:
- legacy: a single gas price, from eth_gasPrice or the configured oracle list
- eip1559: maxFeePerGas = baseFee * baseFeeMultiplier + priorityFee

A chain without a usable gas target submits nothing for the cycle.
"""

from typing import Any, Dict, List, Optional

import structlog

from rrp_node.config import (
    DEFAULT_FULFILLMENT_GAS_LIMIT,
    ChainOptions,
    ConstantGasPrice,
    LatestBlockPercentileGasPrice,
    ProviderRecommendedGasPrice,
)
from rrp_node.core.errors import GasPriceError, RpcError

from .models import DynamicGasTarget, GasTarget, LegacyGasTarget
from .rpc import JsonRpcClient
from .state import ProviderState, update


logger = structlog.stdlib.get_logger("execution.gas")


def fulfillment_gas_limit(chain_options: ChainOptions) -> int:
    """Configured fulfillment gas limit, or the protocol default."""
    return chain_options.fulfillment_gas_limit or DEFAULT_FULFILLMENT_GAS_LIMIT


def compute_max_fee_per_gas(base_fee: int, multiplier: int, priority_fee: int) -> int:
    return base_fee * multiplier + priority_fee


def percentile_gas_price(gas_prices: List[int], percentile: int) -> int:
    """Nearest-rank percentile of the given prices."""
    if not gas_prices:
        raise ValueError("No gas prices to take a percentile of")
    ordered = sorted(gas_prices)
    rank = max(1, -(-percentile * len(ordered) // 100))
    return ordered[rank - 1]


def _transaction_gas_price(tx: Dict[str, Any]) -> Optional[int]:
    value = tx.get("gasPrice") or tx.get("maxFeePerGas")
    if value is None:
        return None
    return int(value, 16) if isinstance(value, str) else int(value)


# ---------------------------
# Legacy oracle strategies
# ---------------------------

async def provider_recommended_gas_price(
    rpc: JsonRpcClient,
    strategy: ProviderRecommendedGasPrice,
) -> int:
    gas_price = await rpc.get_gas_price()
    return int(gas_price * strategy.recommended_gas_price_multiplier)


async def latest_block_percentile_gas_price(
    rpc: JsonRpcClient,
    strategy: LatestBlockPercentileGasPrice,
) -> int:
    block = await rpc.get_block("latest", full_transactions=True)
    prices = [
        price
        for price in (_transaction_gas_price(tx) for tx in block.get("transactions", []))
        if price is not None
    ]
    if len(prices) < strategy.min_transaction_count:
        raise ValueError(
            f"Latest block has {len(prices)} priced transactions, "
            f"{strategy.min_transaction_count} required"
        )
    return percentile_gas_price(prices, strategy.percentile)


async def constant_gas_price(rpc: JsonRpcClient, strategy: ConstantGasPrice) -> int:
    return strategy.gas_price


async def _oracle_gas_price(rpc: JsonRpcClient, strategy: Any) -> int:
    match strategy:
        case ProviderRecommendedGasPrice():
            return await provider_recommended_gas_price(rpc, strategy)
        case LatestBlockPercentileGasPrice():
            return await latest_block_percentile_gas_price(rpc, strategy)
        case ConstantGasPrice():
            return await constant_gas_price(rpc, strategy)
    raise ValueError(f"Unknown gas price strategy: {strategy!r}")


async def get_legacy_gas_price(rpc: JsonRpcClient, chain_options: ChainOptions) -> int:
    """
    Resolve the legacy gas price.

    Oracle strategies are tried in their configured order and the first one
    that produces a price wins. Without an oracle the node's eth_gasPrice is used.

    Raises:
        GasPriceError: every source failed
    """
    if not chain_options.gas_price_oracle:
        try:
            return await rpc.get_gas_price()
        except RpcError as e:
            raise GasPriceError(f"eth_gasPrice failed: {e}") from e

    failures = []
    for strategy in chain_options.gas_price_oracle:
        try:
            gas_price = await _oracle_gas_price(rpc, strategy)
        except (RpcError, ValueError) as e:
            logger.debug(
                "gas_price_strategy_failed",
                strategy=strategy.gas_price_strategy,
                error=str(e),
            )
            failures.append(f"{strategy.gas_price_strategy}: {e}")
            continue
        if gas_price > 0:
            return gas_price
        failures.append(f"{strategy.gas_price_strategy}: non-positive price {gas_price}")

    raise GasPriceError(f"All gas price strategies failed ({'; '.join(failures)})")


async def get_gas_target(
    rpc: JsonRpcClient,
    chain_options: ChainOptions,
    chain_id: Optional[str] = None,
) -> GasTarget:
    """
    Compute the gas target for a chain's fulfillments.

    Args:
        rpc: Connection to the chain
        chain_options: Fee-market settings of the chain
        chain_id: Used for error context only

    Returns:
        LegacyGasTarget or DynamicGasTarget, matching chain_options.tx_type

    Raises:
        GasPriceError: fee data could not be obtained
    """
    gas_limit = fulfillment_gas_limit(chain_options)

    if chain_options.tx_type == "legacy":
        try:
            gas_price = await get_legacy_gas_price(rpc, chain_options)
        except GasPriceError as e:
            raise GasPriceError(e.message, chain_id=chain_id) from e
        return LegacyGasTarget(gas_price=gas_price, gas_limit=gas_limit)

    try:
        base_fee = await rpc.get_base_fee()
    except RpcError as e:
        raise GasPriceError(f"Base fee lookup failed: {e}", chain_id=chain_id) from e
    if base_fee is None:
        raise GasPriceError("Latest block has no baseFeePerGas", chain_id=chain_id)

    priority_fee = chain_options.priority_fee
    return DynamicGasTarget(
        max_fee_per_gas=compute_max_fee_per_gas(
            base_fee, chain_options.base_fee_multiplier, priority_fee
        ),
        max_priority_fee_per_gas=priority_fee,
        gas_limit=gas_limit,
    )


async def set_gas_target(state: ProviderState) -> ProviderState:
    """Pipeline stage: attach the chain's gas target, or None when unavailable."""
    try:
        gas_target = await get_gas_target(
            state.rpc,
            state.settings.chain_options,
            chain_id=state.settings.chain_id,
        )
    except GasPriceError as e:
        logger.warning("gas_target_unavailable", error=e.message, **state.log_context)
        return update(state, gas_target=None)

    logger.info(
        "gas_target_selected",
        tx_type=state.settings.chain_options.tx_type,
        **gas_target.to_tx_params(),
        **state.log_context,
    )
    return update(state, gas_target=gas_target)
