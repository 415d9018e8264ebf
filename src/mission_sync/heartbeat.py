"""Staleness detection and the silence watchdog.

A mission view is only flagged stale when local data has not been refreshed
for a while *and* the push channel has been quiet for a while; an idle
mission legitimately produces neither. The watchdog triggers an unsolicited
reconcile for the foreground mission after a stretch of push silence, and
backs off when those background reads keep failing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mission_sync.config import StalenessConfig
from mission_sync.models import normalize_id
from mission_sync.reconciler import MergeDecision
from mission_sync.status_resolver import is_ended

if TYPE_CHECKING:
	from mission_sync.reconciler import Reconciler
	from mission_sync.scheduler import Scheduler

logger = logging.getLogger(__name__)

WATCHDOG_TIMER = "watchdog"


class StalenessMonitor:
	"""Decides the stale flag and logs each transition once."""

	def __init__(self, config: StalenessConfig | None = None) -> None:
		self._config = config or StalenessConfig()
		self._stale: set[str] = set()

	def evaluate(self, mission_id: str, last_refresh_at: float, last_push_at: float, now: float) -> bool:
		key = normalize_id(mission_id)
		refresh_old = now - last_refresh_at >= self._config.stale_after_seconds
		push_quiet = now - last_push_at >= self._config.push_silence_seconds
		stale = refresh_old and push_quiet

		if stale and key not in self._stale:
			self._stale.add(key)
			logger.warning(
				"Mission %s is stale: no refresh for %.0fs and no push for %.0fs",
				key, now - last_refresh_at, now - last_push_at,
			)
		elif not stale and key in self._stale:
			self._stale.discard(key)
			logger.info("Mission %s is fresh again", key)
		return stale

	def forget(self, mission_id: str) -> None:
		self._stale.discard(normalize_id(mission_id))

	def is_stale(self, mission_id: str) -> bool:
		return normalize_id(mission_id) in self._stale


class Watchdog:
	"""Background reconcile for the foreground mission after push silence."""

	def __init__(
		self,
		reconciler: Reconciler,
		scheduler: Scheduler,
		config: StalenessConfig | None = None,
	) -> None:
		self._reconciler = reconciler
		self._scheduler = scheduler
		self._config = config or StalenessConfig()
		self._failures: dict[str, int] = {}

	def start(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		self._failures[key] = 0
		self._arm(key, self._config.watchdog_silence_seconds)

	def stop(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		self._scheduler.cancel(key, WATCHDOG_TIMER)
		self._failures.pop(key, None)

	def failures(self, mission_id: str) -> int:
		return self._failures.get(normalize_id(mission_id), 0)

	def backoff_delay(self, failures: int) -> float:
		"""Delay before the next attempt after ``failures`` consecutive failed reads."""
		if failures <= 0:
			return self._config.watchdog_silence_seconds
		delay = self._config.watchdog_backoff_base_seconds * (2 ** (failures - 1))
		return min(delay, self._config.watchdog_backoff_max_seconds)

	def _arm(self, key: str, delay: float) -> None:
		cursor = self._reconciler.cursor(key)
		if cursor is None:
			return
		generation = cursor.generation
		self._scheduler.call_later(
			key, WATCHDOG_TIMER, delay,
			lambda: self._check(key, generation),
			generation=generation,
		)

	async def _check(self, key: str, generation: int) -> None:
		cursor = self._reconciler.cursor(key)
		if cursor is None or cursor.generation != generation:
			return
		if cursor.displayed_status is not None and is_ended(cursor.displayed_status) and not cursor.predicted:
			logger.debug("Watchdog for %s stopped: mission ended", key)
			self._failures.pop(key, None)
			return

		now = self._scheduler.now()
		quiet_for = now - max(cursor.last_push_at, cursor.last_refresh_at)
		silence = self._config.watchdog_silence_seconds
		if quiet_for < silence:
			self._arm(key, silence - quiet_for)
			return

		logger.debug("Watchdog: %s quiet for %.0fs, reconciling", key, quiet_for)
		decision = await self._reconciler.reconcile(key, force=True, reason="watchdog")
		if self._reconciler.cursor(key) is not cursor:
			return
		if decision is MergeDecision.FETCH_FAILED:
			self._failures[key] = self._failures.get(key, 0) + 1
			delay = self.backoff_delay(self._failures[key])
			logger.info("Watchdog read for %s failed, next attempt in %.0fs", key, delay)
		else:
			self._failures[key] = 0
			delay = silence
		self._arm(key, delay)
