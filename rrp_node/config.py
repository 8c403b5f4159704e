import json
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from rrp_node.core.errors import ConfigurationError


BASE_DIR = Path(__file__).resolve().parents[1]

# Defaults used when a chain does not override them
DEFAULT_FULFILLMENT_GAS_LIMIT = 500_000
DEFAULT_BASE_FEE_MULTIPLIER = 2
DEFAULT_PRIORITY_FEE_WEI = 3_120_000_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Render logs as JSON lines or as colored console output",
    )

    # Secrets
    provider_mnemonic: SecretStr = Field(
        default=SecretStr(""),
        description="BIP39 mnemonic the provider and sponsor wallets are derived from",
    )

    # Node configuration
    config_path: Path = Field(
        default=BASE_DIR / "config.json",
        description="Path to the JSON node configuration (chains, providers, options)",
    )

    # RPC
    rpc_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout applied to every JSON-RPC round trip",
    )

    @property
    def has_mnemonic(self) -> bool:
        return bool(self.provider_mnemonic.get_secret_value().strip())


# =============================================================================
# Node configuration file
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class ProviderRecommendedGasPrice(_CamelModel):
    """Use eth_gasPrice, scaled by a multiplier."""
    gas_price_strategy: Literal["providerRecommendedGasPrice"]
    recommended_gas_price_multiplier: float = Field(default=1.0, gt=0)


class LatestBlockPercentileGasPrice(_CamelModel):
    """Use a percentile of the gas prices paid in the latest block."""
    gas_price_strategy: Literal["latestBlockPercentileGasPrice"]
    percentile: int = Field(default=60, ge=1, le=100)
    min_transaction_count: int = Field(default=20, ge=1)


class ConstantGasPrice(_CamelModel):
    """Fixed gas price in wei, usually the last entry of the oracle list."""
    gas_price_strategy: Literal["constantGasPrice"]
    gas_price: int = Field(gt=0)


GasPriceStrategyConfig = Annotated[
    Union[ProviderRecommendedGasPrice, LatestBlockPercentileGasPrice, ConstantGasPrice],
    Field(discriminator="gas_price_strategy"),
]


class ChainOptions(_CamelModel):
    tx_type: Literal["legacy", "eip1559"] = "legacy"
    gas_price_oracle: List[GasPriceStrategyConfig] = Field(default_factory=list)
    fulfillment_gas_limit: Optional[int] = Field(default=None, gt=0)
    base_fee_multiplier: int = Field(default=DEFAULT_BASE_FEE_MULTIPLIER, ge=2)
    priority_fee: int = Field(default=DEFAULT_PRIORITY_FEE_WEI, ge=0)


class ChainProvider(_CamelModel):
    url: str

    @field_validator("url")
    @classmethod
    def _require_http(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("Provider URL must be http(s)")
        return value


class ChainContracts(_CamelModel):
    rrp: str

    @field_validator("rrp")
    @classmethod
    def _require_address(cls, value: str) -> str:
        if not value.startswith("0x") or len(value) != 42:
            raise ValueError(f"Invalid contract address: {value}")
        return value


class ChainConfig(_CamelModel):
    id: str
    type: Literal["evm"] = "evm"
    providers: Dict[str, ChainProvider]
    contracts: ChainContracts
    chain_options: ChainOptions = Field(default_factory=ChainOptions)

    @field_validator("id")
    @classmethod
    def _require_numeric_id(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError(f"Chain id must be a decimal string: {value}")
        return value

    @field_validator("providers")
    @classmethod
    def _require_provider(cls, value: Dict[str, ChainProvider]) -> Dict[str, ChainProvider]:
        if not value:
            raise ValueError("At least one provider is required per chain")
        return value


class NodeConfig(_CamelModel):
    chains: List[ChainConfig]


def load_node_config(path: Optional[Path] = None) -> NodeConfig:
    """Read and validate the JSON node configuration.

    Raises:
        ConfigurationError: when the file is missing, unreadable or invalid
    """
    config_path = Path(path or settings.config_path)
    try:
        raw = json.loads(config_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read node config {config_path}: {exc}") from exc

    try:
        return NodeConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid node config {config_path}: {exc}") from exc


# Global settings instance
settings = Settings()
