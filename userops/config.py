from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

DEFAULT_ENTRY_POINT_ADDRESS = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(default="INFO", description="Logging level")

    # Persistence
    store_backend: str = Field(
        default="memory",
        description="Operation/event store backend (memory, convex)",
    )
    convex_url: str = Field(
        default="",
        description="Convex deployment URL",
        validation_alias=AliasChoices("convex_url", "CONVEX_URL", "CONVEX_DEPLOYMENT_URL"),
    )
    convex_deploy_key: str = Field(default="", description="Convex deploy key")
    convex_timeout_seconds: float = Field(default=30.0, gt=0, description="Convex HTTP timeout")

    # Admission policy
    replacement_window_minutes: int = Field(
        default=60,
        ge=0,
        description="Age after which a settled user operation may be replaced",
    )
    max_nonce_value_digits: int = Field(
        default=30,
        ge=1,
        description="Maximum length of the decimal nonce value",
    )
    admission_wait_durable: bool = Field(
        default=True,
        description="Await the insert of newly admitted user operations before returning",
    )

    # Batch selection
    local_batch_limit: int = Field(default=1000, ge=1, description="Max LOCAL operations fetched globally")
    entry_point_batch_limit: int = Field(
        default=100,
        ge=1,
        description="Max LOCAL operations fetched per chain and entry point",
    )

    @property
    def has_convex(self) -> bool:
        return bool(self.convex_url)


class ChainConfig(BaseModel):
    """Static bundler parameters for one chain."""

    model_config = ConfigDict(frozen=True)

    max_bundle_gas: int = 7_000_000
    supported_entry_points: tuple[str, ...] = (DEFAULT_ENTRY_POINT_ADDRESS,)

    def supports_entry_point(self, entry_point: str) -> bool:
        if not self.supported_entry_points:
            return True
        target = entry_point.lower()
        return any(ep.lower() == target for ep in self.supported_entry_points)


class BundlerConfig(BaseModel):
    """Per-chain parameter table; overrides are merged over ``default``."""

    model_config = ConfigDict(frozen=True)

    default: ChainConfig = Field(default_factory=ChainConfig)
    chains: Dict[int, Dict[str, Any]] = Field(default_factory=dict)

    def for_chain(self, chain_id: int) -> ChainConfig:
        override = self.chains.get(int(chain_id))
        if not override:
            return self.default
        return ChainConfig.model_validate({**self.default.model_dump(), **override})


BUNDLER_CONFIG_TABLE: Dict[str, Any] = {
    "default": {
        "max_bundle_gas": 7_000_000,
        "supported_entry_points": [DEFAULT_ENTRY_POINT_ADDRESS],
    },
    "chains": {
        534351: {"max_bundle_gas": 5_000_000},
    },
}


@lru_cache
def load_bundler_config(table: Optional[str] = None) -> BundlerConfig:
    """Load the static chain table once per process.

    ``table`` is an optional JSON document with the same shape as
    ``BUNDLER_CONFIG_TABLE``.
    """
    if table:
        return BundlerConfig.model_validate_json(table)
    return BundlerConfig.model_validate(BUNDLER_CONFIG_TABLE)


# Global settings instance
settings = Settings()
