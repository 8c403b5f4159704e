"""
Request, gas and transaction models for the execution pipeline.

All records are frozen; pipeline stages produce new records with
dataclasses.replace instead of editing shared ones.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class RequestStatus(str, Enum):
    """Request lifecycle status."""
    PENDING = "pending"          # Discovered, authorization not checked yet
    AUTHORIZED = "authorized"    # Sponsor endorsed the client
    BLOCKED = "blocked"          # Sponsor did not endorse the client
    SUBMITTED = "submitted"      # fulfill/fail/fulfillWithdrawal broadcast
    ERRORED = "errored"          # Simulation revert or broadcast rejected, not submitted
    FULFILLED = "fulfilled"      # Fulfilled on-chain in an earlier cycle
    FAILED = "failed"            # Failed on-chain in an earlier cycle
    IGNORED = "ignored"          # Dropped by discovery (e.g. too old)


TERMINAL_STATUSES = frozenset(
    {RequestStatus.FULFILLED, RequestStatus.FAILED, RequestStatus.IGNORED}
)


class RequestErrorCode(str, Enum):
    """Why a request cannot be fulfilled with API data."""
    API_CALL_FAILED = "api_call_failed"
    TEMPLATE_NOT_FOUND = "template_not_found"
    INVALID_PARAMETERS = "invalid_parameters"
    UNAUTHORIZED = "unauthorized"
    SIMULATION_REVERTED = "simulation_reverted"
    SUBMISSION_FAILED = "submission_failed"
    INSUFFICIENT_FUNDS = "insufficient_funds"


# Errors the adapter reports before submission: these are answered with fail()
FAILABLE_ERROR_CODES = frozenset(
    {
        RequestErrorCode.API_CALL_FAILED,
        RequestErrorCode.TEMPLATE_NOT_FOUND,
        RequestErrorCode.INVALID_PARAMETERS,
    }
)


@dataclass(frozen=True)
class RequestError:
    code: RequestErrorCode
    message: str = ""


@dataclass(frozen=True)
class ApiCallResponse:
    """Resolved off-chain response attached to a fulfill call."""
    status_code: int
    data: bytes


@dataclass(frozen=True)
class Fulfillment:
    transaction_hash: str


# =============================================================================
# Requests
# =============================================================================

@dataclass(frozen=True)
class RequestHeader:
    """Fields every request variant carries."""
    id: str                                     # bytes32 hex, content-addressed
    sponsor_address: str
    sponsor_index: int
    designated_wallet: str
    status: RequestStatus = RequestStatus.PENDING

    # Discovery order
    block_number: int = 0
    log_index: int = 0
    transaction_hash: Optional[str] = None

    # Set by the pipeline
    nonce: Optional[int] = None
    error: Optional[RequestError] = None
    fulfillment: Optional[Fulfillment] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class RegularRequest(RequestHeader):
    """Request keyed by a pre-registered template."""
    template_id: str = ""
    fulfill_address: str = ""
    fulfill_function_id: str = ""              # bytes4 hex
    parameters: bytes = b""
    response: Optional[ApiCallResponse] = None


@dataclass(frozen=True)
class FullRequest(RequestHeader):
    """Request with endpoint and parameters inline."""
    endpoint_id: str = ""
    fulfill_address: str = ""
    fulfill_function_id: str = ""
    parameters: bytes = b""
    response: Optional[ApiCallResponse] = None


@dataclass(frozen=True)
class WithdrawalRequest(RequestHeader):
    """Sponsor asking for the designated wallet balance to be sent back."""
    destination: str = ""


ApiCallRequest = Union[RegularRequest, FullRequest]
Request = Union[RegularRequest, FullRequest, WithdrawalRequest]


# =============================================================================
# Gas
# =============================================================================

@dataclass(frozen=True)
class LegacyGasTarget:
    """Single gas price fee market (type 0 transactions)."""
    gas_price: int
    gas_limit: int

    @property
    def max_cost_per_gas(self) -> int:
        return self.gas_price

    def with_gas_limit(self, gas_limit: int) -> "LegacyGasTarget":
        return LegacyGasTarget(gas_price=self.gas_price, gas_limit=gas_limit)

    def to_tx_params(self) -> Dict[str, int]:
        return {"gasPrice": self.gas_price, "gas": self.gas_limit}


@dataclass(frozen=True)
class DynamicGasTarget:
    """Base fee fee market (EIP-1559, type 2 transactions)."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_limit: int

    @property
    def max_cost_per_gas(self) -> int:
        return self.max_fee_per_gas

    def with_gas_limit(self, gas_limit: int) -> "DynamicGasTarget":
        return DynamicGasTarget(
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            gas_limit=gas_limit,
        )

    def to_tx_params(self) -> Dict[str, int]:
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "gas": self.gas_limit,
        }


GasTarget = Union[LegacyGasTarget, DynamicGasTarget]


# =============================================================================
# Wallets and transactions
# =============================================================================

@dataclass(frozen=True)
class WalletSnapshot:
    """On-chain state of a designated wallet observed at cycle start."""
    address: str
    transaction_count: int
    balance: int


@dataclass(frozen=True)
class PreparedTransaction:
    """A transaction ready to be signed and broadcast."""
    chain_id: int
    from_address: str
    to_address: str
    data: str                                   # Encoded calldata (hex)
    nonce: int
    gas_target: GasTarget
    value: int = 0
    request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for signing."""
        tx: Dict[str, Any] = {
            "chainId": self.chain_id,
            "to": self.to_address,
            "data": self.data,
            "value": self.value,
            "nonce": self.nonce,
        }
        tx.update(self.gas_target.to_tx_params())
        return tx

    def to_call_dict(self) -> Dict[str, Any]:
        """Unsigned call object for eth_call / eth_estimateGas."""
        call: Dict[str, Any] = {
            "from": self.from_address,
            "to": self.to_address,
            "data": self.data,
        }
        if self.value:
            call["value"] = hex(self.value)
        return call
