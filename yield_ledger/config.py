"""
Ledger settings.

Loaded from environment variables (prefix ``YIELD_``) or a local ``.env`` file
using pydantic-settings.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the ledger and the advisory client."""

    model_config = SettingsConfigDict(
        env_prefix="YIELD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Withdrawals
    min_withdrawal: Decimal = Decimal("50.00")
    max_withdrawal: Decimal = Decimal("10000.00")
    withdrawal_fee: Decimal = Field(default=Decimal("1.00"), ge=0)

    # Referral tiers
    referral_max_levels: int = Field(default=3, ge=1)
    referral_level_percentages: list[Decimal] = Field(
        default_factory=lambda: [Decimal("10"), Decimal("5"), Decimal("2")]
    )
    referral_active: bool = True

    # Deposit addresses shown to users
    deposit_address_trc20: str = "TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE"
    deposit_address_bep20: str = "0x742d35cc6634c0532925a3b844bc9e7595f0beb0"

    # Advisory insight (Groq)
    groq_api_key: Optional[str] = None
    advisory_model: str = "llama-3.3-70b-versatile"
    advisory_timeout_seconds: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"
    seed_demo_data: bool = True

    @field_validator("referral_level_percentages")
    @classmethod
    def validate_percentages(cls, v: list[Decimal]) -> list[Decimal]:
        if any(p < 0 for p in v):
            raise ValueError("Referral percentages must be non-negative")
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        if self.min_withdrawal <= 0:
            raise ValueError("min_withdrawal must be positive")
        if self.min_withdrawal > self.max_withdrawal:
            raise ValueError("min_withdrawal cannot exceed max_withdrawal")
        if len(self.referral_level_percentages) != self.referral_max_levels:
            raise ValueError(
                f"Expected {self.referral_max_levels} referral percentages, "
                f"got {len(self.referral_level_percentages)}"
            )
        return self

    def deposit_addresses(self) -> dict[str, str]:
        return {
            "TRC20": self.deposit_address_trc20,
            "BEP20": self.deposit_address_bep20,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
