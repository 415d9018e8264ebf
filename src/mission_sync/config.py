"""TOML configuration loader for mission-sync.

Every timing constant of the engine (grace period, cache TTLs, sticky and
optimistic windows, retry delays) lives here so it can be tuned without
code changes.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class ApiConfig:
	"""Snapshot API connection settings."""

	base_url: str = "http://127.0.0.1:8080/api"
	timeout_seconds: float = 10.0
	list_limit: int = 100


@dataclass
class ResolverConfig:
	"""Clock-derived status resolution."""

	grace_seconds: int = 30  # under-filled missions stay Arming this long after enrollment_end


@dataclass
class PredictorConfig:
	"""Deadline predictor tick rates and confirmation policy."""

	tick_seconds: float = 1.0
	fast_tick_seconds: float = 0.1
	fast_window_seconds: float = 90.0  # final stretch of the Active phase ticks at fast rate


@dataclass
class OverlayConfig:
	"""Optimistic override windows."""

	join_window_seconds: float = 15.0
	round_window_seconds: float = 15.0


@dataclass
class CacheConfig:
	"""Fetch/cache coordinator TTLs."""

	micro_ttl_seconds: float = 0.9
	active_view_ttl_seconds: float = 8.0
	list_cooldown_seconds: float = 3.0
	eligibility_ttl_seconds: float = 10.0


@dataclass
class ReconcilerConfig:
	"""Regression-retry and sticky-window policy."""

	retry_delay_seconds: float = 1.5
	max_retries: int = 3
	resume_sticky_seconds: float = 5.0
	default_pause_seconds: int = 60  # used when a paused record carries no cooldown schedule


@dataclass
class PushConfig:
	"""Push channel connection and reconnection settings."""

	url: str = ""
	subscribe_url: str = ""
	reconnect_base_delay_seconds: float = 1.0
	reconnect_max_delay_seconds: float = 30.0
	max_reconnect_attempts: int = 8


@dataclass
class DedupConfig:
	"""Outbound notification de-duplication."""

	window_seconds: float = 2.0


@dataclass
class StalenessConfig:
	"""Staleness detection and watchdog settings."""

	stale_after_seconds: float = 60.0
	push_silence_seconds: float = 60.0
	watchdog_silence_seconds: float = 30.0
	watchdog_backoff_base_seconds: float = 15.0
	watchdog_backoff_max_seconds: float = 60.0


@dataclass
class SyncConfig:
	"""Top-level mission-sync configuration."""

	api: ApiConfig = field(default_factory=ApiConfig)
	resolver: ResolverConfig = field(default_factory=ResolverConfig)
	predictor: PredictorConfig = field(default_factory=PredictorConfig)
	overlay: OverlayConfig = field(default_factory=OverlayConfig)
	cache: CacheConfig = field(default_factory=CacheConfig)
	reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
	push: PushConfig = field(default_factory=PushConfig)
	dedup: DedupConfig = field(default_factory=DedupConfig)
	staleness: StalenessConfig = field(default_factory=StalenessConfig)


def _build_api(data: dict[str, Any]) -> ApiConfig:
	ac = ApiConfig()
	if "base_url" in data:
		ac.base_url = str(data["base_url"]).rstrip("/")
	if "timeout_seconds" in data:
		ac.timeout_seconds = float(data["timeout_seconds"])
	if "list_limit" in data:
		ac.list_limit = int(data["list_limit"])
	return ac


def _build_resolver(data: dict[str, Any]) -> ResolverConfig:
	rc = ResolverConfig()
	if "grace_seconds" in data:
		rc.grace_seconds = int(data["grace_seconds"])
	return rc


def _build_predictor(data: dict[str, Any]) -> PredictorConfig:
	pc = PredictorConfig()
	for key in ("tick_seconds", "fast_tick_seconds", "fast_window_seconds"):
		if key in data:
			setattr(pc, key, float(data[key]))
	return pc


def _build_overlay(data: dict[str, Any]) -> OverlayConfig:
	oc = OverlayConfig()
	if "join_window_seconds" in data:
		oc.join_window_seconds = float(data["join_window_seconds"])
	if "round_window_seconds" in data:
		oc.round_window_seconds = float(data["round_window_seconds"])
	return oc


def _build_cache(data: dict[str, Any]) -> CacheConfig:
	cc = CacheConfig()
	for key in (
		"micro_ttl_seconds", "active_view_ttl_seconds",
		"list_cooldown_seconds", "eligibility_ttl_seconds",
	):
		if key in data:
			setattr(cc, key, float(data[key]))
	return cc


def _build_reconciler(data: dict[str, Any]) -> ReconcilerConfig:
	rc = ReconcilerConfig()
	if "retry_delay_seconds" in data:
		rc.retry_delay_seconds = float(data["retry_delay_seconds"])
	if "max_retries" in data:
		rc.max_retries = int(data["max_retries"])
	if "resume_sticky_seconds" in data:
		rc.resume_sticky_seconds = float(data["resume_sticky_seconds"])
	if "default_pause_seconds" in data:
		rc.default_pause_seconds = int(data["default_pause_seconds"])
	return rc


def _build_push(data: dict[str, Any]) -> PushConfig:
	pc = PushConfig()
	if "url" in data:
		pc.url = str(data["url"])
	if "subscribe_url" in data:
		pc.subscribe_url = str(data["subscribe_url"])
	if "reconnect_base_delay_seconds" in data:
		pc.reconnect_base_delay_seconds = float(data["reconnect_base_delay_seconds"])
	if "reconnect_max_delay_seconds" in data:
		pc.reconnect_max_delay_seconds = float(data["reconnect_max_delay_seconds"])
	if "max_reconnect_attempts" in data:
		pc.max_reconnect_attempts = int(data["max_reconnect_attempts"])
	return pc


def _build_dedup(data: dict[str, Any]) -> DedupConfig:
	dc = DedupConfig()
	if "window_seconds" in data:
		dc.window_seconds = float(data["window_seconds"])
	return dc


def _build_staleness(data: dict[str, Any]) -> StalenessConfig:
	sc = StalenessConfig()
	for key in (
		"stale_after_seconds", "push_silence_seconds", "watchdog_silence_seconds",
		"watchdog_backoff_base_seconds", "watchdog_backoff_max_seconds",
	):
		if key in data:
			setattr(sc, key, float(data[key]))
	return sc


def load_config(path: str | Path) -> SyncConfig:
	"""Load and parse a mission-sync TOML config file.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	cfg = SyncConfig()
	if "api" in data:
		cfg.api = _build_api(data["api"])
	if "resolver" in data:
		cfg.resolver = _build_resolver(data["resolver"])
	if "predictor" in data:
		cfg.predictor = _build_predictor(data["predictor"])
	if "overlay" in data:
		cfg.overlay = _build_overlay(data["overlay"])
	if "cache" in data:
		cfg.cache = _build_cache(data["cache"])
	if "reconciler" in data:
		cfg.reconciler = _build_reconciler(data["reconciler"])
	if "push" in data:
		cfg.push = _build_push(data["push"])
	if "dedup" in data:
		cfg.dedup = _build_dedup(data["dedup"])
	if "staleness" in data:
		cfg.staleness = _build_staleness(data["staleness"])
	return cfg


def validate_config(config: SyncConfig) -> list[tuple[str, str]]:
	"""Check a loaded config for inconsistent values.

	Returns a list of (level, message) tuples where level is "error" or "warning".
	"""
	issues: list[tuple[str, str]] = []

	if not config.api.base_url:
		issues.append(("error", "api.base_url is empty"))
	if config.api.timeout_seconds <= 0:
		issues.append(("error", "api.timeout_seconds must be positive"))
	if not 1 <= config.api.list_limit <= 100:
		issues.append(("warning", f"api.list_limit {config.api.list_limit} is outside 1..100 and will be clamped"))

	if config.resolver.grace_seconds < 0:
		issues.append(("error", "resolver.grace_seconds must not be negative"))

	if config.predictor.tick_seconds <= 0 or config.predictor.fast_tick_seconds <= 0:
		issues.append(("error", "predictor tick intervals must be positive"))
	elif config.predictor.fast_tick_seconds > config.predictor.tick_seconds:
		issues.append(("warning", "predictor.fast_tick_seconds is slower than tick_seconds"))

	if config.cache.micro_ttl_seconds >= config.cache.active_view_ttl_seconds:
		issues.append(("warning", "cache.micro_ttl_seconds should be shorter than active_view_ttl_seconds"))
	if not 2.0 <= config.cache.list_cooldown_seconds <= 5.0:
		issues.append(("warning", "cache.list_cooldown_seconds is usually between 2 and 5 seconds"))

	if config.reconciler.max_retries < 0:
		issues.append(("error", "reconciler.max_retries must not be negative"))
	if config.reconciler.retry_delay_seconds <= 0:
		issues.append(("error", "reconciler.retry_delay_seconds must be positive"))

	if config.overlay.join_window_seconds <= 0 or config.overlay.round_window_seconds <= 0:
		issues.append(("error", "overlay windows must be positive"))

	if config.push.max_reconnect_attempts < 1:
		issues.append(("error", "push.max_reconnect_attempts must be at least 1"))
	if config.push.reconnect_base_delay_seconds > config.push.reconnect_max_delay_seconds:
		issues.append(("warning", "push.reconnect_base_delay_seconds exceeds reconnect_max_delay_seconds"))

	if config.dedup.window_seconds <= 0:
		issues.append(("error", "dedup.window_seconds must be positive"))

	stale = config.staleness
	if stale.watchdog_silence_seconds >= stale.push_silence_seconds:
		issues.append((
			"warning",
			"staleness.watchdog_silence_seconds should be shorter than push_silence_seconds",
		))
	if stale.watchdog_backoff_base_seconds > stale.watchdog_backoff_max_seconds:
		issues.append(("error", "staleness.watchdog_backoff_base_seconds exceeds the backoff cap"))

	return issues
