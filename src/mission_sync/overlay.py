"""Short-lived optimistic value overrides installed after committed actions.

An override is consulted by every merge while ``now < valid_until`` and is
ignored afterwards. Nothing deletes it; the next install for the same
mission simply replaces it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mission_sync.config import OverlayConfig
from mission_sync.models import MissionRecord, MissionStatus, normalize_id

logger = logging.getLogger(__name__)

GROW_PHASES = frozenset({MissionStatus.ENROLLING, MissionStatus.ARMING})
SHRINK_PHASES = frozenset({MissionStatus.ACTIVE, MissionStatus.PAUSED})


@dataclass(frozen=True)
class OptimisticOverride:
	kind: str
	valid_until: float
	players_base: int = 0
	players_delta: int = 0
	pool_override: int | None = None

	@property
	def predicted_players(self) -> int:
		return self.players_base + self.players_delta

	def is_live(self, now: float) -> bool:
		return now < self.valid_until


class OptimisticOverlay:
	"""One override per mission id, last writer wins.

	Join overrides only grow values (players, pool) during Enrolling/Arming.
	Round-resolution overrides only shrink the pool during Active/Paused.
	A snapshot that already meets the predicted value keeps its own value.
	"""

	def __init__(self, config: OverlayConfig | None = None) -> None:
		self._config = config or OverlayConfig()
		self._overrides: dict[str, OptimisticOverride] = {}

	def install_join(self, mission_id: str, record: MissionRecord, now: float) -> OptimisticOverride:
		pool = record.pool_current + record.fee_amount if record.fee_amount > 0 else None
		override = OptimisticOverride(
			kind="join",
			valid_until=now + self._config.join_window_seconds,
			players_base=record.players_joined,
			players_delta=1,
			pool_override=pool,
		)
		return self._install(mission_id, override)

	def install_round_resolution(
		self,
		mission_id: str,
		record: MissionRecord,
		payout: int,
		now: float,
	) -> OptimisticOverride:
		override = OptimisticOverride(
			kind="round",
			valid_until=now + self._config.round_window_seconds,
			pool_override=max(0, record.pool_current - int(payout)),
		)
		return self._install(mission_id, override)

	def _install(self, mission_id: str, override: OptimisticOverride) -> OptimisticOverride:
		key = normalize_id(mission_id)
		if key in self._overrides:
			logger.debug("Replacing %s override for %s", self._overrides[key].kind, key)
		self._overrides[key] = override
		logger.debug("Installed %s override for %s until %.1f", override.kind, key, override.valid_until)
		return override

	def get_live(self, mission_id: str, now: float) -> OptimisticOverride | None:
		override = self._overrides.get(normalize_id(mission_id))
		if override is None or not override.is_live(now):
			return None
		return override

	def discard(self, mission_id: str) -> None:
		self._overrides.pop(normalize_id(mission_id), None)

	def apply(self, record: MissionRecord, now: float) -> MissionRecord:
		"""Return ``record`` with any live override merged in. Never mutates the input."""
		override = self.get_live(record.id, now)
		if override is None:
			return record

		changes: dict[str, int] = {}
		if override.kind == "join" and record.status in GROW_PHASES:
			players = max(record.players_joined, override.predicted_players)
			if record.players_max:
				players = min(players, record.players_max)
			if players != record.players_joined:
				changes["players_joined"] = players
			if override.pool_override is not None and override.pool_override > record.pool_current:
				changes["pool_current"] = override.pool_override
		elif override.kind == "round" and record.status in SHRINK_PHASES:
			if override.pool_override is not None and override.pool_override < record.pool_current:
				changes["pool_current"] = override.pool_override

		if not changes:
			return record
		return record.with_updates(**changes)
