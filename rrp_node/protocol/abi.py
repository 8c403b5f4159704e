"""
ABI surface of the request/response contract.

Function signatures, selectors, event topics and the hashing rules the
contract uses to key requests. Everything here has to stay bit-exact with
the deployed contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_abi.packed import encode_packed
from eth_utils import keccak, to_bytes, to_checksum_address


HexLike = Union[str, bytes]

# Error(string), the standard revert payload
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

INCORRECT_FULFILLMENT_PARAMETERS = "Incorrect fulfillment parameters"
CLIENT_NOT_ENDORSED = "Client not endorsed by requester"

# Selector of the callback most clients expose: fulfill(bytes32,uint256,bytes)
CLIENT_FULFILL_SIGNATURE = "fulfill(bytes32,uint256,bytes)"


def to_bytes_value(value: HexLike) -> bytes:
    """Accept 0x-prefixed hex or raw bytes."""
    if isinstance(value, bytes):
        return value
    return to_bytes(hexstr=value)


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def event_topic(signature: str) -> bytes:
    return keccak(text=signature)


@dataclass(frozen=True)
class FunctionSpec:
    """A contract function: name, argument types, return types."""
    name: str
    input_types: Tuple[str, ...]
    output_types: Tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return function_selector(self.signature)

    def encode_call(self, args: Sequence[Any]) -> bytes:
        return self.selector + encode(list(self.input_types), list(args))

    def decode_output(self, data: HexLike) -> Tuple[Any, ...]:
        return tuple(decode(list(self.output_types), to_bytes_value(data)))


@dataclass(frozen=True)
class EventSpec:
    name: str
    input_types: Tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def topic(self) -> bytes:
        return event_topic(self.signature)


MAKE_REQUEST = FunctionSpec(
    "makeRequest",
    ("bytes32", "uint256", "address", "address", "bytes4", "bytes"),
    ("bytes32",),
)
MAKE_FULL_REQUEST = FunctionSpec(
    "makeFullRequest",
    ("bytes32", "bytes32", "uint256", "address", "address", "bytes4", "bytes"),
    ("bytes32",),
)
FULFILL = FunctionSpec(
    "fulfill",
    ("bytes32", "bytes32", "uint256", "bytes", "address", "bytes4"),
    ("bool", "bytes"),
)
FAIL = FunctionSpec(
    "fail",
    ("bytes32", "bytes32", "address", "bytes4"),
)
FULFILL_WITHDRAWAL = FunctionSpec(
    "fulfillWithdrawal",
    ("bytes32", "bytes32", "uint256", "address"),
)

FUNCTIONS: Dict[bytes, FunctionSpec] = {
    fn.selector: fn
    for fn in (MAKE_REQUEST, MAKE_FULL_REQUEST, FULFILL, FAIL, FULFILL_WITHDRAWAL)
}

CLIENT_REQUEST_CREATED = EventSpec(
    "ClientRequestCreated",
    ("bytes32", "bytes32", "uint256", "address", "bytes32", "uint256", "address", "address", "bytes4", "bytes"),
)
CLIENT_FULL_REQUEST_CREATED = EventSpec(
    "ClientFullRequestCreated",
    ("bytes32", "bytes32", "uint256", "address", "bytes32", "uint256", "address", "address", "bytes4", "bytes"),
)
CLIENT_REQUEST_FULFILLED = EventSpec(
    "ClientRequestFulfilled",
    ("bytes32", "bytes32", "uint256", "bytes"),
)
CLIENT_REQUEST_FAILED = EventSpec(
    "ClientRequestFailed",
    ("bytes32", "bytes32"),
)
WITHDRAWAL_FULFILLED = EventSpec(
    "WithdrawalFulfilled",
    ("bytes32", "uint256", "bytes32", "address", "address", "uint256"),
)
# Emitted by the client contract, not the request/response contract
REQUEST_FULFILLED = EventSpec(
    "RequestFulfilled",
    ("bytes32", "uint256", "bytes"),
)


def decode_call(data: HexLike) -> Tuple[FunctionSpec, Tuple[Any, ...]]:
    """Split calldata into the function it targets and its decoded arguments."""
    raw = to_bytes_value(data)
    fn = FUNCTIONS.get(raw[:4])
    if fn is None:
        raise ValueError(f"Unknown function selector: 0x{raw[:4].hex()}")
    return fn, tuple(decode(list(fn.input_types), raw[4:]))


def decode_revert_reason(data: Optional[HexLike]) -> Optional[str]:
    """Extract the message of an Error(string) revert, if that is what data holds."""
    if not data:
        return None
    raw = to_bytes_value(data)
    if raw[:4] != ERROR_STRING_SELECTOR:
        return None
    try:
        (reason,) = decode(["string"], raw[4:])
    except (DecodingError, UnicodeDecodeError):
        return None
    return reason


def encode_revert_reason(reason: str) -> bytes:
    return ERROR_STRING_SELECTOR + encode(["string"], [reason])


# =============================================================================
# Hashing rules
# =============================================================================

def derive_provider_id(provider_address: str) -> bytes:
    """providerId = keccak256(abi.encode(providerAddress))"""
    return keccak(encode(["address"], [to_checksum_address(provider_address)]))


def derive_endpoint_id(endpoint_name: str) -> bytes:
    """endpointId = keccak256(abi.encode(endpointName))"""
    return keccak(encode(["string"], [endpoint_name]))


def derive_template_id(provider_id: HexLike, endpoint_id: HexLike, parameters: HexLike) -> bytes:
    return keccak(
        encode_packed(
            ["bytes32", "bytes32", "bytes"],
            [to_bytes_value(provider_id), to_bytes_value(endpoint_id), to_bytes_value(parameters)],
        )
    )


def derive_request_id(
    request_count: int,
    client_address: str,
    template_id: HexLike,
    parameters: HexLike,
) -> bytes:
    """Request id of a regular (template) request."""
    return keccak(
        encode_packed(
            ["uint256", "address", "bytes32", "bytes"],
            [
                request_count,
                to_checksum_address(client_address),
                to_bytes_value(template_id),
                to_bytes_value(parameters),
            ],
        )
    )


def derive_full_request_id(
    request_count: int,
    client_address: str,
    provider_id: HexLike,
    endpoint_id: HexLike,
    parameters: HexLike,
) -> bytes:
    """Request id of a full request, parameters inline."""
    return keccak(
        encode_packed(
            ["uint256", "address", "bytes32", "bytes32", "bytes"],
            [
                request_count,
                to_checksum_address(client_address),
                to_bytes_value(provider_id),
                to_bytes_value(endpoint_id),
                to_bytes_value(parameters),
            ],
        )
    )


def derive_withdrawal_request_id(
    withdrawal_count: int,
    provider_id: HexLike,
    sponsor_index: int,
    designated_wallet: str,
    destination: str,
) -> bytes:
    return keccak(
        encode_packed(
            ["uint256", "bytes32", "uint256", "address", "address"],
            [
                withdrawal_count,
                to_bytes_value(provider_id),
                sponsor_index,
                to_checksum_address(designated_wallet),
                to_checksum_address(destination),
            ],
        )
    )


def derive_fulfillment_parameters_hash(
    provider_id: HexLike,
    designated_wallet: str,
    fulfill_address: str,
    fulfill_function_id: HexLike,
) -> bytes:
    """What the contract stores per request and re-derives on fulfill/fail."""
    return keccak(
        encode_packed(
            ["bytes32", "address", "address", "bytes4"],
            [
                to_bytes_value(provider_id),
                to_checksum_address(designated_wallet),
                to_checksum_address(fulfill_address),
                to_bytes_value(fulfill_function_id),
            ],
        )
    )
