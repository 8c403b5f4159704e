"""
Deterministic wallet derivation.

Every sponsor gets a designated wallet derived from the provider mnemonic
at m/44'/60'/0'/0/{sponsorIndex}. The provider's own wallet sits at index 0,
which the contract never hands out to a sponsor. Derivation is pure; the
cache only saves repeated PBKDF2/BIP32 work within a process.
"""

from functools import lru_cache

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_hex

from rrp_node.core.errors import ConfigurationError
from rrp_node.protocol.abi import derive_provider_id

Account.enable_unaudited_hdwallet_features()

DERIVATION_PATH_PREFIX = "m/44'/60'/0'/0"
PROVIDER_WALLET_INDEX = 0


def derivation_path(sponsor_index: int) -> str:
    if sponsor_index < 0:
        raise ValueError(f"Sponsor index must be non-negative: {sponsor_index}")
    return f"{DERIVATION_PATH_PREFIX}/{sponsor_index}"


@lru_cache(maxsize=1024)
def _derive(mnemonic: str, sponsor_index: int) -> LocalAccount:
    path = derivation_path(sponsor_index)
    try:
        return Account.from_mnemonic(mnemonic, account_path=path)
    except Exception as exc:  # noqa: BLE001
        # eth_account raises ValidationError/ValueError for bad phrases
        raise ConfigurationError(f"Invalid provider mnemonic: {type(exc).__name__}") from None


def derive_sponsor_wallet(mnemonic: str, sponsor_index: int) -> LocalAccount:
    """
    Derive the designated wallet of a sponsor.

    Args:
        mnemonic: Provider BIP39 mnemonic
        sponsor_index: On-chain index of the sponsor

    Returns:
        LocalAccount able to sign for the designated wallet address

    Raises:
        ConfigurationError: the mnemonic is malformed
    """
    return _derive(mnemonic.strip(), sponsor_index)


def derive_sponsor_wallet_address(mnemonic: str, sponsor_index: int) -> str:
    return derive_sponsor_wallet(mnemonic, sponsor_index).address


def derive_provider_wallet(mnemonic: str) -> LocalAccount:
    return derive_sponsor_wallet(mnemonic, PROVIDER_WALLET_INDEX)


def derive_provider_id_from_mnemonic(mnemonic: str) -> str:
    """providerId as 0x-prefixed bytes32 hex."""
    return to_hex(derive_provider_id(derive_provider_wallet(mnemonic).address))


def validate_mnemonic(mnemonic: str) -> None:
    """Fail fast on malformed key material before any chain work starts."""
    if not mnemonic or not mnemonic.strip():
        raise ConfigurationError("Provider mnemonic is not set")
    derive_provider_wallet(mnemonic)
