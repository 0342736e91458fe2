"""
Facilitator Configuration

``Settings`` collects every tunable of the facilitator. Values come from
environment variables prefixed ``METARELAY_`` (a ``.env`` file is loaded
through python-dotenv) and may be overridden with keyword arguments.

Example:
    settings = Settings.from_env(relay_address="0xRelay")
    configure_logging(settings.log_level)
"""

import logging
import os
from decimal import Decimal
from typing import Any, Dict, Optional

import dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator

from .engine.exceptions import ConfigurationError
from .schemas.bases import PriorityTier

dotenv.load_dotenv()

ENV_PREFIX = "METARELAY_"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseModel):
    """
    Facilitator settings.

    Attributes:
        chain_id: Chain the relay is deployed on.
        rpc_url: JSON-RPC endpoint (may embed a provider key; never logged).
        relay_address: Deployed MetaTxRelay address.
        relayer_private_key: Relayer signing key.
        rate_limit_requests / rate_limit_window_seconds: Per-requester fixed window.
        faucet_*: Faucet limits and amounts (payment-token smallest units).
        tier_*_bps: Gas price multipliers per priority tier.
        native_token_price: Whole payment tokens per whole native token.
        relayer_balance_buffer_bps: Safety buffer applied to the relayer gas check.
        relay_gas_overhead: Gas the relay adds on top of the target call.
        gas_limit_margin_bps: Gas limit of relay transactions relative to the quote.
        fee_cache_ttl_seconds: TTL of the cached fee rate / payment token.
        required_confirmations: Confirmations before a settlement is final.
    """
    model_config = ConfigDict(frozen=True)

    # chain
    chain_id: int = Field(default=11155111, gt=0)
    rpc_url: Optional[SecretStr] = None
    relay_address: Optional[str] = None
    relayer_private_key: Optional[SecretStr] = None
    explorer_url: Optional[str] = None

    # rate limiting
    rate_limit_requests: int = Field(default=100, gt=0)
    rate_limit_window_seconds: float = Field(default=3600.0, gt=0)
    faucet_rate_limit_requests: int = Field(default=5, gt=0)
    faucet_window_seconds: float = Field(default=86400.0, gt=0)
    faucet_max_amount: int = Field(default=100_000_000, gt=0)
    faucet_default_amount: int = Field(default=10_000_000, gt=0)

    # pricing
    tier_low_bps: int = Field(default=8000, gt=0)
    tier_standard_bps: int = Field(default=10000, gt=0)
    tier_high_bps: int = Field(default=13000, gt=0)
    native_token_price: Decimal = Field(default=Decimal("3000"), gt=0)
    payment_token_decimals: int = Field(default=6, ge=0)
    relayer_balance_buffer_bps: int = Field(default=11000, ge=10000)
    relay_gas_overhead: int = Field(default=60_000, ge=0)
    gas_limit_margin_bps: int = Field(default=12000, ge=10000)
    fee_cache_ttl_seconds: float = Field(default=60.0, ge=0)

    # request handling
    max_payload_bytes: int = Field(default=24_576, gt=0)
    submission_queue_size: int = Field(default=64, gt=0)
    settlement_history_size: int = Field(default=10_000, gt=0)

    # rpc
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    rpc_max_attempts: int = Field(default=3, gt=0)
    rpc_backoff_seconds: float = Field(default=0.5, ge=0)
    receipt_timeout_seconds: float = Field(default=120.0, gt=0)
    receipt_poll_interval: float = Field(default=2.0, gt=0)
    required_confirmations: int = Field(default=1, gt=0)

    # http
    host: str = "127.0.0.1"
    port: int = Field(default=8000, gt=0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_tiers(self) -> "Settings":
        if not self.tier_low_bps < self.tier_standard_bps < self.tier_high_bps:
            raise ValueError("tier multipliers must be strictly increasing (low < standard < high)")
        if self.faucet_default_amount > self.faucet_max_amount:
            raise ValueError("faucet_default_amount must not exceed faucet_max_amount")
        return self

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> "Settings":
        """
        Build settings from ``<prefix><FIELD>`` environment variables.

        Keyword arguments take precedence over the environment.

        Raises:
            ConfigurationError: If a value is missing its required shape.
        """
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            # field names only; values may be secrets
            fields = sorted({".".join(str(p) for p in err["loc"]) or "settings" for err in e.errors()})
            raise ConfigurationError(f"Invalid configuration: {', '.join(fields)}") from e

    def require_chain(self) -> None:
        """Raise ``ConfigurationError`` unless everything needed for a live chain is set."""
        missing = [
            name for name in ("rpc_url", "relay_address", "relayer_private_key")
            if getattr(self, name) is None
        ]
        if missing:
            raise ConfigurationError(
                "Missing configuration: " + ", ".join(f"{ENV_PREFIX}{m.upper()}" for m in missing)
            )

    def tier_multipliers(self) -> Dict[PriorityTier, int]:
        return {
            PriorityTier.LOW: self.tier_low_bps,
            PriorityTier.STANDARD: self.tier_standard_bps,
            PriorityTier.HIGH: self.tier_high_bps,
        }


def configure_logging(level: str = "INFO") -> None:
    """Install a stream handler on the root logger at ``level``."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # web3 logs every request at DEBUG, including the provider URL
    logging.getLogger("web3").setLevel(max(logging.INFO, logging.getLogger().level))
