"""
Provider state: the per-cycle snapshot one chain/provider pipeline works on.

State is a frozen value. `update` returns a copy with fields replaced and
`refresh` rebuilds the RPC handle, which is the only non-value member.
"""

import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Tuple

from rrp_node.config import ChainConfig, ChainOptions, settings

from .models import GasTarget, Request, WalletSnapshot
from .rpc import JsonRpcClient


@dataclass(frozen=True)
class ProviderSettings:
    """Chain/provider settings, fixed for the life of a cycle."""
    chain_id: str
    chain_type: str
    name: str                                   # Provider name from the config
    url: str
    contract_address: str                       # Request/response contract
    provider_id: str                            # bytes32 hex
    chain_options: ChainOptions = field(default_factory=ChainOptions)
    log_format: str = "json"
    log_level: str = "INFO"
    rpc_timeout_seconds: float = 30.0
    mnemonic: str = field(default="", repr=False)

    @classmethod
    def from_chain_config(
        cls,
        chain: ChainConfig,
        provider_name: str,
        provider_id: str,
        mnemonic: str,
    ) -> "ProviderSettings":
        return cls(
            chain_id=chain.id,
            chain_type=chain.type,
            name=provider_name,
            url=chain.providers[provider_name].url,
            contract_address=chain.contracts.rrp,
            provider_id=provider_id,
            chain_options=chain.chain_options,
            log_format=settings.log_format,
            log_level=settings.log_level,
            rpc_timeout_seconds=settings.rpc_timeout_seconds,
            mnemonic=mnemonic,
        )


@dataclass(frozen=True)
class ProviderState:
    settings: ProviderSettings
    coordinator_id: str
    requests: Tuple[Request, ...] = ()
    gas_target: Optional[GasTarget] = None
    wallets: Tuple[WalletSnapshot, ...] = ()
    rpc: Optional[JsonRpcClient] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        # Callers may hand in lists; keep the stored collections immutable
        object.__setattr__(self, "requests", tuple(self.requests))
        object.__setattr__(self, "wallets", tuple(self.wallets))

    @property
    def log_context(self) -> dict:
        return {
            "coordinator_id": self.coordinator_id,
            "chain_id": self.settings.chain_id,
            "chain_type": self.settings.chain_type,
            "provider": self.settings.name,
        }

    def wallet(self, address: str) -> Optional[WalletSnapshot]:
        for snapshot in self.wallets:
            if snapshot.address.lower() == address.lower():
                return snapshot
        return None


def generate_coordinator_id() -> str:
    """Identifier grouping everything a single cycle logs."""
    return secrets.token_hex(8)


def create(
    provider_settings: ProviderSettings,
    coordinator_id: str,
    requests: Iterable[Request] = (),
) -> ProviderState:
    state = ProviderState(
        settings=provider_settings,
        coordinator_id=coordinator_id,
        requests=tuple(requests),
    )
    return refresh(state)


def refresh(state: ProviderState) -> ProviderState:
    """Rebuild the RPC handle if it is missing or closed. Logical fields are untouched."""
    if state.rpc is not None and not state.rpc.is_closed:
        return state
    rpc = JsonRpcClient(state.settings.url, timeout=state.settings.rpc_timeout_seconds)
    return replace(state, rpc=rpc)


def update(state: ProviderState, **changes: Any) -> ProviderState:
    """Return a copy of state with the given fields replaced."""
    return replace(state, **changes)
