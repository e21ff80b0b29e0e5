from __future__ import annotations

import pytest

from session_integrity.config import DWELL_ENV, STRIKES_ENV, TICK_ENV, IntegrityConfig
from session_integrity.keys import CHEAT_COMPONENT, CLOCK_COMPONENT, SessionKey, component_of, record_key


def test_record_key_layout() -> None:
    key = SessionKey("st-17", "matching_type", "305")
    assert record_key(CHEAT_COMPONENT, key) == "anti_cheating:st-17:matching_type:305"
    assert record_key(CLOCK_COMPONENT, key) == "test_timer:st-17:matching_type:305"


def test_colons_inside_ids_cannot_collide() -> None:
    a = SessionKey("u:1", "quiz", "2")
    b = SessionKey("u", "1:quiz", "2")
    assert record_key(CHEAT_COMPONENT, a) != record_key(CHEAT_COMPONENT, b)


def test_component_of() -> None:
    assert component_of("test_timer:u:k:1") == CLOCK_COMPONENT
    assert component_of("anti_cheating:u:k:1") == CHEAT_COMPONENT
    assert component_of("theme") is None
    assert component_of("other:u:k:1") is None


def test_from_parts_coerces_and_validates() -> None:
    assert SessionKey.from_parts(17, "input", 5) == SessionKey("17", "input", "5")
    with pytest.raises(ValueError):
        SessionKey.from_parts(None, "input", 5)
    with pytest.raises(ValueError):
        SessionKey.from_parts("u", "  ", 5)


def test_config_defaults() -> None:
    cfg = IntegrityConfig()
    assert cfg.dwell_threshold_ms == 6500
    assert cfg.strike_threshold == 2
    assert cfg.tick_interval_ms == 1000


@pytest.mark.parametrize(
    "kwargs",
    [{"dwell_threshold_ms": 0}, {"strike_threshold": 0}, {"tick_interval_s": 0.0}, {"stale_entry_max_age_ms": 0}],
)
def test_config_rejects_invalid_values(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        IntegrityConfig(**kwargs)  # type: ignore[arg-type]


def test_config_from_env_overrides_and_falls_back() -> None:
    cfg = IntegrityConfig.from_env({DWELL_ENV: "7000", STRIKES_ENV: "3", TICK_ENV: "0.5"})
    assert (cfg.dwell_threshold_ms, cfg.strike_threshold, cfg.tick_interval_ms) == (7000, 3, 500)

    bad = IntegrityConfig.from_env({DWELL_ENV: "soon", STRIKES_ENV: "-2", TICK_ENV: "0"})
    assert bad == IntegrityConfig()
