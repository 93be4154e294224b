"""Runtime configuration loaded from the environment and an optional .env file."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from velo.core.pools import DEFAULT_PROGRAM_ID


class VeloSettings(BaseSettings):
    """All tunables, read from VELO_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="VELO_", env_file=".env", extra="ignore")

    environment: Literal["development", "test", "production"] = "development"
    program_id: str = DEFAULT_PROGRAM_ID

    # Relayer
    relayer_keypair_path: Optional[Path] = None
    relay_mode: Literal["test", "proof"] = "test"
    min_fee: int = Field(10_000, ge=0, description="Minimum fee in lamports")
    max_fee: int = Field(100_000_000, ge=0, description="Maximum fee in lamports")
    fee_bps: int = Field(50, ge=0, le=10_000, description="Fee in basis points of the denomination")
    stale_root_retries: int = Field(3, ge=0)
    require_auth: bool = False
    jwt_secret: str = "change-me-in-production"
    jwt_expire_minutes: int = 60

    # Accumulator
    merkle_depth: int = Field(20, ge=1, le=32)
    root_history_size: int = Field(30, ge=1)

    # Proof pipeline
    artifacts_dir: Path = Path("build/circuits")
    proving_backend: Literal["local", "snarkjs"] = "local"
    snarkjs_bin: str = "snarkjs"
    universal_power: int = Field(16, ge=1, le=28)
    ceremony_sha256: Optional[str] = None

    # Relayer-local nullifier cache
    database_url: str = "sqlite:///velo_relayer.db"

    @model_validator(mode="after")
    def _check_fees(self) -> "VeloSettings":
        if self.min_fee > self.max_fee:
            raise ValueError("min_fee must not exceed max_fee")
        return self


@lru_cache(maxsize=1)
def get_settings() -> VeloSettings:
    """Cached settings instance."""
    return VeloSettings()
