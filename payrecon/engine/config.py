"""Tunable matching configuration."""

import logging
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DUPLICATE_WINDOWS = ("month", "week", "day")


@dataclass
class MatchingConfig:
    """
    Scoring weights, thresholds and windows used by the engine.

    With the default weights only an exact-amount candidate (or one referenced
    by invoice number) can reach the auto-approval threshold.
    """
    amount_weight: float = 70.0
    name_weight: float = 20.0
    date_weight: float = 10.0
    amount_epsilon: Decimal = Decimal("0.01")
    partial_amount_factor: float = 0.5
    name_similarity_floor: float = 0.5
    date_window_days: int = 30
    explicit_reference_score: float = 98.0
    auto_approve_threshold: float = 70.0
    tie_margin: float = 5.0
    max_candidates: int = 20
    duplicate_window: str = "month"
    max_workers: int = 4
    exchange_rates: Dict[Tuple[str, str], Decimal] = field(default_factory=dict)

    def __post_init__(self):
        self.amount_epsilon = Decimal(str(self.amount_epsilon))
        self.exchange_rates = {
            (src.upper(), dst.upper()): Decimal(str(rate))
            for (src, dst), rate in self.exchange_rates.items()
        }
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: If any value is out of range.
        """
        for name in ("amount_weight", "name_weight", "date_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative.")
        if self.amount_weight + self.name_weight + self.date_weight > 100:
            raise ValueError("Scoring weights must not add up to more than 100.")
        if not 0 <= self.auto_approve_threshold <= 100:
            raise ValueError("auto_approve_threshold must be between 0 and 100.")
        if not 0 <= self.explicit_reference_score <= 100:
            raise ValueError("explicit_reference_score must be between 0 and 100.")
        if not 0 <= self.partial_amount_factor <= 1:
            raise ValueError("partial_amount_factor must be between 0 and 1.")
        if not 0 <= self.name_similarity_floor <= 1:
            raise ValueError("name_similarity_floor must be between 0 and 1.")
        if self.tie_margin < 0:
            raise ValueError("tie_margin must be non-negative.")
        if self.date_window_days < 0:
            raise ValueError("date_window_days must be non-negative.")
        if self.max_candidates < 1:
            raise ValueError("max_candidates must be at least 1.")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1.")
        if self.amount_epsilon < 0:
            raise ValueError("amount_epsilon must be non-negative.")
        if self.duplicate_window not in DUPLICATE_WINDOWS:
            raise ValueError(
                f"duplicate_window must be one of {', '.join(DUPLICATE_WINDOWS)}."
            )
        for pair, rate in self.exchange_rates.items():
            if rate <= 0:
                raise ValueError(f"Exchange rate for {pair[0]}->{pair[1]} must be positive.")

    def rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """Return conversion rate between currencies, or None if unknown."""
        src, dst = from_currency.upper(), to_currency.upper()
        if src == dst:
            return Decimal("1")
        if (src, dst) in self.exchange_rates:
            return self.exchange_rates[(src, dst)]
        if (dst, src) in self.exchange_rates:
            return Decimal("1") / self.exchange_rates[(dst, src)]
        return None

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "MatchingConfig":
        """Build a config from a plain mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}

        weights = values.get("weights") or {}
        for key in ("amount", "name", "date"):
            if key in weights:
                kwargs[f"{key}_weight"] = float(weights[key])

        rates = values.get("exchange_rates") or {}
        if rates:
            kwargs["exchange_rates"] = {
                tuple(pair.upper().split("/")): rate for pair, rate in rates.items()
            }

        for key, value in values.items():
            if key in ("weights", "exchange_rates"):
                continue
            if key not in known:
                logger.warning("Ignoring unknown config key: %s", key)
                continue
            kwargs[key] = value

        return cls(**kwargs)


def load_config(path: Optional[str | Path] = None) -> MatchingConfig:
    """
    Load matching configuration from a YAML file over the defaults.

    Args:
        path: Optional YAML file. Exchange rates are written as
              ``{"EUR/PLN": 4.3}``, weights as ``{"amount": 70, ...}``.

    Returns:
        MatchingConfig with file values merged over defaults.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ValueError: If the file content is invalid.
    """
    if path is None:
        return MatchingConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    return MatchingConfig.from_mapping(data)
