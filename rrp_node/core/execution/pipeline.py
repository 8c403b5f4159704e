"""
Transaction pipeline for one chain/provider pair.

refresh -> assign nonces -> gas target -> submit

Stages run strictly in sequence and each returns a new ProviderState.
"""

from collections import Counter

import structlog

from rrp_node.core.errors import RecoverableError, UnrecoverableError, classify_error

from .fulfillments import submit
from .gas import set_gas_target
from .nonces import assign_nonces, is_eligible
from .state import ProviderState, refresh
from .wallet import validate_mnemonic


logger = structlog.stdlib.get_logger("execution.pipeline")


def _log_summary(state: ProviderState, skipped: str = "") -> None:
    statuses = Counter(request.status.value for request in state.requests)
    logger.info(
        "transactions_processed",
        requests=len(state.requests),
        statuses=dict(statuses),
        skipped=skipped or None,
        **state.log_context,
    )


async def process_transactions(state: ProviderState) -> ProviderState:
    """
    Turn the authorized requests of a state into submitted transactions.

    Returns the state with nonces, gas target and per-request outcomes set.
    Returns it unchanged, without touching the chain, when no request is
    eligible for submission.

    Raises:
        ConfigurationError: the provider mnemonic is unusable
        RecoverableError: the chain could not be reached outside the
            per-wallet and per-request isolation points
    """
    if not any(is_eligible(request) for request in state.requests):
        _log_summary(state, skipped="no_eligible_requests")
        return state

    try:
        validate_mnemonic(state.settings.mnemonic)
        state = refresh(state)

        state = await assign_nonces(state)
        if all(request.nonce is None for request in state.requests):
            _log_summary(state, skipped="no_nonces_assigned")
            return state

        state = await set_gas_target(state)
        if state.gas_target is None:
            _log_summary(state, skipped="no_gas_target")
            return state

        state = await submit(state)
    except (RecoverableError, UnrecoverableError) as e:
        context = classify_error(e)
        logger.error(
            "pipeline_aborted",
            category=context.category.value,
            recoverable=context.recoverable,
            error=str(e),
            **state.log_context,
        )
        raise

    _log_summary(state)
    return state
