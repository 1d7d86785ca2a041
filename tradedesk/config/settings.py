"""Centralized environment-based settings for tradedesk.

Reads configuration from environment variables with sensible defaults.
The gateway and store clients read their own credentials from env, so
this module provides the process-level settings that aren't
client-specific, plus the optional risk-threshold YAML file.

Usage:
    from tradedesk.config.settings import get_settings
    settings = get_settings()
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradedesk.exceptions import SchemaValidationError


class RiskThresholds(BaseModel):
    """Risk thresholds used by the reconciliation engine."""

    model_config = ConfigDict(frozen=True)

    near_liquidation: float = Field(
        default=0.10,
        gt=0.0,
        lt=1.0,
        description="Fractional distance to liquidation below which a position is flagged",
    )
    entry_drift: float = Field(
        default=0.0001,
        ge=0.0,
        description="Absolute entry-price difference that triggers a stored-value correction",
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RiskThresholds":
        """Load thresholds from a YAML file.

        Expected YAML structure:
            thresholds:
              near_liquidation: 0.10
              entry_drift: 0.0001

        A missing file yields the defaults.

        Raises:
            SchemaValidationError: If the file holds invalid values.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        try:
            return cls(**(raw.get("thresholds") or {}))
        except ValidationError as e:
            raise SchemaValidationError(f"Invalid thresholds in {path}: {e}") from e


@dataclass(frozen=True)
class TradeDeskSettings:
    """Immutable application settings loaded from environment."""

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Reconciliation timing
    poll_interval_seconds: float = 3.0
    max_concurrent_symbols: int = 4
    gateway_timeout: float = 15.0

    # Risk
    near_liquidation_threshold: float = 0.10
    entry_drift_threshold: float = 0.0001

    # Close workflow
    close_flash_fallback: bool = True
    cancel_protective_orders: bool = True

    # Connections (empty = client reads its own env var / not configured)
    gateway_url: str = ""
    gateway_key: str = ""
    supabase_url: str = ""
    supabase_service_key: str = ""

    def has_gateway(self) -> bool:
        return bool(self.gateway_url and self.gateway_key)

    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    @property
    def thresholds(self) -> RiskThresholds:
        return RiskThresholds(
            near_liquidation=self.near_liquidation_threshold,
            entry_drift=self.entry_drift_threshold,
        )


def get_settings() -> TradeDeskSettings:
    """Load settings from environment variables.

    Environment variables (all optional):
        TRADEDESK_LOG_LEVEL: Logging level (default: INFO)
        TRADEDESK_LOG_JSON: JSON log output (default: true)
        TRADEDESK_POLL_INTERVAL_SECONDS: Reconciliation interval (default: 3)
        TRADEDESK_MAX_CONCURRENT_SYMBOLS: Symbols reconciled at once (default: 4)
        TRADEDESK_GATEWAY_TIMEOUT: Gateway request timeout in seconds (default: 15)
        TRADEDESK_THRESHOLDS_FILE: YAML file with risk thresholds
        TRADEDESK_NEAR_LIQUIDATION_THRESHOLD: Overrides the file (default: 0.10)
        TRADEDESK_ENTRY_DRIFT_THRESHOLD: Overrides the file (default: 0.0001)
        TRADEDESK_CLOSE_FLASH_FALLBACK: Flash-close when the market close fails (default: true)
        TRADEDESK_CANCEL_PROTECTIVE_ORDERS: Cancel SL/TP orders after a close (default: true)
        TRADEDESK_GATEWAY_URL / TRADEDESK_GATEWAY_KEY: Exchange façade
        SUPABASE_URL / SUPABASE_SERVICE_KEY: Position store
    """
    def _bool(key: str, default: bool = False) -> bool:
        val = os.environ.get(key, "").lower()
        if val in ("1", "true", "yes"):
            return True
        if val in ("0", "false", "no"):
            return False
        return default

    def _float(key: str, default: float) -> float:
        val = os.environ.get(key, "").strip()
        return float(val) if val else default

    thresholds_file: Optional[str] = os.environ.get("TRADEDESK_THRESHOLDS_FILE")
    thresholds = RiskThresholds.from_yaml(thresholds_file) if thresholds_file else RiskThresholds()

    return TradeDeskSettings(
        log_level=os.environ.get("TRADEDESK_LOG_LEVEL", "INFO").upper(),
        log_json=_bool("TRADEDESK_LOG_JSON", True),
        poll_interval_seconds=_float("TRADEDESK_POLL_INTERVAL_SECONDS", 3.0),
        max_concurrent_symbols=int(os.environ.get("TRADEDESK_MAX_CONCURRENT_SYMBOLS", "4")),
        gateway_timeout=_float("TRADEDESK_GATEWAY_TIMEOUT", 15.0),
        near_liquidation_threshold=_float(
            "TRADEDESK_NEAR_LIQUIDATION_THRESHOLD", thresholds.near_liquidation
        ),
        entry_drift_threshold=_float("TRADEDESK_ENTRY_DRIFT_THRESHOLD", thresholds.entry_drift),
        close_flash_fallback=_bool("TRADEDESK_CLOSE_FLASH_FALLBACK", True),
        cancel_protective_orders=_bool("TRADEDESK_CANCEL_PROTECTIVE_ORDERS", True),
        gateway_url=os.environ.get("TRADEDESK_GATEWAY_URL", ""),
        gateway_key=os.environ.get("TRADEDESK_GATEWAY_KEY", ""),
        supabase_url=os.environ.get("SUPABASE_URL", ""),
        supabase_service_key=os.environ.get("SUPABASE_SERVICE_KEY", ""),
    )
