"""
Centralized configuration for the basket analysis pipeline.
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# Non-product system codes (postage, fees, manual adjustments)
EXCLUDED_STOCK_CODES: frozenset[str] = frozenset({
    "POST",
    "D",
    "M",
    "BANK CHARGES",
    "DOT",
    "CRUK",
    "PADS",
    "C2",
    "AMAZONFEE",
})

# Matched anywhere inside the stock code
EXCLUDED_STOCK_CODE_MARKERS: tuple[str, ...] = ("ADJUST", "TEST", "SAMPLE")


class ConfigurationError(ValueError):
    """Raised when analysis settings are rejected before a run starts."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name) or default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a decimal, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int_tuple(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a comma separated list of integers, got {raw!r}")


def _env_float_tuple(name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a comma separated list of numbers, got {raw!r}")


@dataclass(frozen=True)
class AnalysisSettings:
    """Thresholds and policies for one analysis run.

    lift_tiers holds the lower bounds for "Very Strong", "Strong" and
    "Moderate"; tier_discounts holds the matching discount percentages, the
    last one doubling as the floor for the "Weak" bracket.
    """
    min_cooccurrence: int = 10
    min_lift: float = 1.0
    top_min_lift: float = 1.5
    top_n: int = 100
    currency_rate: Decimal = Decimal("1.31")
    require_customer_id: bool = True
    cancellation_prefix: str = "C"
    lift_tiers: Tuple[float, ...] = (5.0, 3.0, 2.0)
    tier_discounts: Tuple[int, ...] = (15, 10, 7)
    excluded_stock_codes: frozenset = field(default=EXCLUDED_STOCK_CODES)
    excluded_stock_code_markers: Tuple[str, ...] = EXCLUDED_STOCK_CODE_MARKERS

    def validate(self) -> "AnalysisSettings":
        for name in ("min_lift", "top_min_lift"):
            if not math.isfinite(getattr(self, name)):
                raise ConfigurationError(f"{name} must be a finite number, got {getattr(self, name)}")
        if not all(math.isfinite(t) for t in self.lift_tiers):
            raise ConfigurationError(f"lift_tiers must be finite numbers, got {self.lift_tiers}")
        if not self.currency_rate.is_finite():
            raise ConfigurationError(f"currency_rate must be a finite decimal, got {self.currency_rate}")
        if any(isinstance(d, bool) or not isinstance(d, int) for d in self.tier_discounts):
            raise ConfigurationError(f"tier_discounts must be whole percentages, got {self.tier_discounts}")
        if self.min_cooccurrence < 0:
            raise ConfigurationError(
                f"min_cooccurrence must be >= 0, got {self.min_cooccurrence}"
            )
        if self.min_lift < 0:
            raise ConfigurationError(f"min_lift must be >= 0, got {self.min_lift}")
        if self.top_min_lift < 0:
            raise ConfigurationError(f"top_min_lift must be >= 0, got {self.top_min_lift}")
        if self.top_n < 0:
            raise ConfigurationError(f"top_n must be >= 0, got {self.top_n}")
        if self.currency_rate <= 0:
            raise ConfigurationError(f"currency_rate must be > 0, got {self.currency_rate}")
        if not self.cancellation_prefix:
            raise ConfigurationError("cancellation_prefix must not be empty")
        if len(self.lift_tiers) != 3:
            raise ConfigurationError(
                f"lift_tiers needs exactly 3 boundaries, got {len(self.lift_tiers)}"
            )
        for higher, lower in zip(self.lift_tiers, self.lift_tiers[1:]):
            if higher <= lower:
                raise ConfigurationError(
                    f"lift_tiers must be strictly descending, got {self.lift_tiers}"
                )
        if len(self.tier_discounts) != len(self.lift_tiers):
            raise ConfigurationError(
                f"tier_discounts needs {len(self.lift_tiers)} values, got {len(self.tier_discounts)}"
            )
        if any(d < 0 or d > 100 for d in self.tier_discounts):
            raise ConfigurationError(
                f"tier_discounts must be percentages in [0, 100], got {self.tier_discounts}"
            )
        return self

    def with_overrides(
        self,
        min_cooccurrence: Optional[int] = None,
        min_lift: Optional[float] = None,
    ) -> "AnalysisSettings":
        """Copy with per-run threshold overrides applied, then validated."""
        updates = {}
        if min_cooccurrence is not None:
            updates["min_cooccurrence"] = min_cooccurrence
        if min_lift is not None:
            updates["min_lift"] = min_lift
        if not updates:
            return self.validate()
        return replace(self, **updates).validate()


def load_analysis_settings() -> AnalysisSettings:
    """Build settings from the environment; raises ConfigurationError on bad values."""
    settings = AnalysisSettings(
        min_cooccurrence=_env_int("MIN_COOCCURRENCE", 10),
        min_lift=_env_float("MIN_LIFT", 1.0),
        top_min_lift=_env_float("TOP_MIN_LIFT", 1.5),
        top_n=_env_int("TOP_N", 100),
        currency_rate=_env_decimal("CURRENCY_RATE", "1.31"),
        require_customer_id=_env_bool("REQUIRE_CUSTOMER_ID", True),
        cancellation_prefix=(os.getenv("CANCELLATION_PREFIX") or "C").strip(),
        lift_tiers=_env_float_tuple("LIFT_TIERS", (5.0, 3.0, 2.0)),
        tier_discounts=_env_int_tuple("TIER_DISCOUNTS", (15, 10, 7)),
    )
    return settings.validate()
