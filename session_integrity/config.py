from __future__ import annotations

import os
from dataclasses import dataclass, fields

DWELL_ENV = "SESSION_INTEGRITY_DWELL_MS"
STRIKES_ENV = "SESSION_INTEGRITY_STRIKES"
TICK_ENV = "SESSION_INTEGRITY_TICK_S"
DB_PATH_ENV = "SESSION_INTEGRITY_DB_PATH"
LOG_LEVEL_ENV = "SESSION_INTEGRITY_LOG_LEVEL"

SEVEN_DAYS_MS = 7 * 24 * 60 * 60 * 1000


@dataclass(frozen=True, slots=True)
class IntegrityConfig:
    """Tunable heuristics shared by the integrity components.

    dwell_threshold_ms: continuous hidden time before a focus loss counts.
    strike_threshold: counted switches after which a session is flagged.
    tick_interval_s: countdown tick period.
    stale_entry_max_age_ms: age beyond which cleanup may drop integrity records.
    """

    dwell_threshold_ms: int = 6500
    strike_threshold: int = 2
    tick_interval_s: float = 1.0
    stale_entry_max_age_ms: int = SEVEN_DAYS_MS

    def __post_init__(self) -> None:
        if self.dwell_threshold_ms <= 0:
            raise ValueError("dwell_threshold_ms must be > 0")
        if self.strike_threshold < 1:
            raise ValueError("strike_threshold must be >= 1")
        if self.tick_interval_s <= 0.0:
            raise ValueError("tick_interval_s must be > 0")
        if self.stale_entry_max_age_ms <= 0:
            raise ValueError("stale_entry_max_age_ms must be > 0")

    @property
    def tick_interval_ms(self) -> int:
        return max(1, int(round(self.tick_interval_s * 1000.0)))

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "IntegrityConfig":
        """Build a config from environment overrides.

        Unparseable or out-of-range values fall back to the defaults.
        """
        env = os.environ if environ is None else environ
        defaults = {f.name: f.default for f in fields(cls)}

        dwell = _as_int(env.get(DWELL_ENV), defaults["dwell_threshold_ms"])
        strikes = _as_int(env.get(STRIKES_ENV), defaults["strike_threshold"])
        tick = _as_float(env.get(TICK_ENV), defaults["tick_interval_s"])

        if dwell <= 0:
            dwell = defaults["dwell_threshold_ms"]
        if strikes < 1:
            strikes = defaults["strike_threshold"]
        if tick <= 0.0:
            tick = defaults["tick_interval_s"]
        return cls(dwell_threshold_ms=dwell, strike_threshold=strikes, tick_interval_s=tick)


def _as_int(value: object, fallback: int) -> int:
    if value is None:
        return fallback
    try:
        return int(str(value).strip())
    except ValueError:
        return fallback


def _as_float(value: object, fallback: float) -> float:
    if value is None:
        return fallback
    try:
        return float(str(value).strip())
    except ValueError:
        return fallback
