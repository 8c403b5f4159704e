"""
Transaction Execution Layer

Turns discovered, authorized requests into transactions sent from the
sponsors' designated wallets:
- ProviderState: per-cycle snapshot, transformed with refresh/update
- assign_nonces: per-wallet nonces from on-chain transaction counts
- get_gas_target: legacy or EIP-1559 fee fields plus a gas limit
- FulfillmentSubmitter: fulfill/fail/fulfillWithdrawal per request
- process_transactions: runs the stages in order

Usage:
    from rrp_node.core.execution import (
        ProviderSettings,
        create_state,
        process_transactions,
    )

    state = create_state(provider_settings, coordinator_id, requests)
    state = await process_transactions(state)
"""

from .models import (
    RequestStatus,
    RequestErrorCode,
    RequestError,
    ApiCallResponse,
    Fulfillment,
    RegularRequest,
    FullRequest,
    WithdrawalRequest,
    ApiCallRequest,
    Request,
    LegacyGasTarget,
    DynamicGasTarget,
    GasTarget,
    WalletSnapshot,
    PreparedTransaction,
)

from .rpc import (
    JsonRpcClient,
)

from .wallet import (
    derive_sponsor_wallet,
    derive_sponsor_wallet_address,
    derive_provider_wallet,
    derive_provider_id_from_mnemonic,
    validate_mnemonic,
)

from .state import (
    ProviderSettings,
    ProviderState,
    create as create_state,
    refresh,
    update,
    generate_coordinator_id,
)

from .nonces import (
    assign,
    assign_nonces,
    is_eligible,
)

from .gas import (
    get_gas_target,
    set_gas_target,
)

from .tx_builder import (
    TransactionBuilder,
)

from .fulfillments import (
    FulfillmentSubmitter,
    submit,
)

from .pipeline import (
    process_transactions,
)

__all__ = [
    # Models
    "RequestStatus",
    "RequestErrorCode",
    "RequestError",
    "ApiCallResponse",
    "Fulfillment",
    "RegularRequest",
    "FullRequest",
    "WithdrawalRequest",
    "ApiCallRequest",
    "Request",
    "LegacyGasTarget",
    "DynamicGasTarget",
    "GasTarget",
    "WalletSnapshot",
    "PreparedTransaction",
    # RPC
    "JsonRpcClient",
    # Wallets
    "derive_sponsor_wallet",
    "derive_sponsor_wallet_address",
    "derive_provider_wallet",
    "derive_provider_id_from_mnemonic",
    "validate_mnemonic",
    # State
    "ProviderSettings",
    "ProviderState",
    "create_state",
    "refresh",
    "update",
    "generate_coordinator_id",
    # Nonces
    "assign",
    "assign_nonces",
    "is_eligible",
    # Gas
    "get_gas_target",
    "set_gas_target",
    # Transaction Builder
    "TransactionBuilder",
    # Submission
    "FulfillmentSubmitter",
    "submit",
    # Pipeline
    "process_transactions",
]
