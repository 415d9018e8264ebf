"""Tests for config loading."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from mission_sync.config import SyncConfig, load_config, validate_config


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "mission-sync.toml"
	toml.write_text("""\
[api]
base_url = "https://missions.example/api/"
timeout_seconds = 5
list_limit = 50

[resolver]
grace_seconds = 45

[predictor]
tick_seconds = 2
fast_tick_seconds = 0.25
fast_window_seconds = 60

[overlay]
join_window_seconds = 20
round_window_seconds = 10

[cache]
micro_ttl_seconds = 0.5
active_view_ttl_seconds = 6
list_cooldown_seconds = 4
eligibility_ttl_seconds = 30

[reconciler]
retry_delay_seconds = 2
max_retries = 5
resume_sticky_seconds = 8
default_pause_seconds = 90

[push]
url = "https://missions.example/hub/stream"
subscribe_url = "https://missions.example/hub/subscribe"
reconnect_base_delay_seconds = 0.5
reconnect_max_delay_seconds = 20
max_reconnect_attempts = 6

[dedup]
window_seconds = 3

[staleness]
stale_after_seconds = 120
push_silence_seconds = 90
watchdog_silence_seconds = 45
watchdog_backoff_base_seconds = 10
watchdog_backoff_max_seconds = 80
""")
	return toml


@pytest.fixture()
def minimal_config(tmp_path: Path) -> Path:
	toml = tmp_path / "mission-sync.toml"
	toml.write_text('[api]\nbase_url = "http://localhost:9000/api"\n')
	return toml


def test_load_full_config(full_config: Path) -> None:
	cfg = load_config(full_config)
	assert cfg.api.base_url == "https://missions.example/api"
	assert cfg.api.timeout_seconds == 5.0
	assert cfg.api.list_limit == 50
	assert cfg.resolver.grace_seconds == 45
	assert cfg.predictor.fast_tick_seconds == 0.25
	assert cfg.overlay.join_window_seconds == 20.0
	assert cfg.cache.eligibility_ttl_seconds == 30.0
	assert cfg.reconciler.max_retries == 5
	assert cfg.reconciler.default_pause_seconds == 90
	assert cfg.push.subscribe_url.endswith("/subscribe")
	assert cfg.push.max_reconnect_attempts == 6
	assert cfg.dedup.window_seconds == 3.0
	assert cfg.staleness.watchdog_backoff_max_seconds == 80.0
	assert validate_config(cfg) == []


def test_load_minimal_config(minimal_config: Path) -> None:
	cfg = load_config(minimal_config)
	assert cfg.api.base_url == "http://localhost:9000/api"
	defaults = SyncConfig()
	assert cfg.resolver.grace_seconds == 30
	assert cfg.cache == defaults.cache
	assert cfg.overlay.join_window_seconds == 15.0
	assert cfg.reconciler.retry_delay_seconds == 1.5
	assert cfg.dedup.window_seconds == 2.0


def test_config_file_not_found() -> None:
	with pytest.raises(FileNotFoundError):
		load_config("/nonexistent/mission-sync.toml")


def test_invalid_toml(tmp_path: Path) -> None:
	toml = tmp_path / "bad.toml"
	toml.write_text("[api\nbase_url = ")
	with pytest.raises(tomllib.TOMLDecodeError):
		load_config(toml)


def test_validate_defaults_clean() -> None:
	assert validate_config(SyncConfig()) == []


def test_validate_errors() -> None:
	cfg = SyncConfig()
	cfg.api.timeout_seconds = 0
	cfg.resolver.grace_seconds = -1
	cfg.reconciler.retry_delay_seconds = 0
	cfg.push.max_reconnect_attempts = 0
	cfg.dedup.window_seconds = 0
	errors = [msg for level, msg in validate_config(cfg) if level == "error"]
	assert len(errors) == 5


def test_validate_warnings() -> None:
	cfg = SyncConfig()
	cfg.api.list_limit = 500
	cfg.cache.micro_ttl_seconds = 10
	cfg.predictor.fast_tick_seconds = 5
	cfg.staleness.watchdog_silence_seconds = 120
	warnings = [msg for level, msg in validate_config(cfg) if level == "warning"]
	assert any("list_limit" in w for w in warnings)
	assert any("micro_ttl_seconds" in w for w in warnings)
	assert any("fast_tick_seconds" in w for w in warnings)
	assert any("watchdog_silence_seconds" in w for w in warnings)
