"""
On-chain protocol surface.

- abi: function/event signatures, selectors and request-id hashing rules
- simulator: in-memory model of the request/response contract
"""

from .abi import (
    FAIL,
    FULFILL,
    FULFILL_WITHDRAWAL,
    INCORRECT_FULFILLMENT_PARAMETERS,
    MAKE_FULL_REQUEST,
    MAKE_REQUEST,
    decode_call,
    decode_revert_reason,
    derive_provider_id,
)
from .simulator import (
    CallResult,
    ContractRevert,
    Event,
    MockClient,
    RequestResponseContract,
)

__all__ = [
    # ABI
    "FAIL",
    "FULFILL",
    "FULFILL_WITHDRAWAL",
    "INCORRECT_FULFILLMENT_PARAMETERS",
    "MAKE_FULL_REQUEST",
    "MAKE_REQUEST",
    "decode_call",
    "decode_revert_reason",
    "derive_provider_id",
    # Simulator
    "CallResult",
    "ContractRevert",
    "Event",
    "MockClient",
    "RequestResponseContract",
]
