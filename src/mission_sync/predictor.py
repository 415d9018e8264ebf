"""Deadline predictor: one ticking timer per open mission view.

Each tick refreshes the countdown and checks the deadline that matters for
the displayed status (Enrolling watches enrollment_end, Arming watches
mission_start, and so on). Crossing a deadline fires exactly once per
(status, deadline) pair: the clock-implied status is applied locally and a
forced snapshot is requested to confirm it.
"""

from __future__ import annotations

import logging

from mission_sync.config import PredictorConfig
from mission_sync.models import MissionStatus, normalize_id
from mission_sync.reconciler import Reconciler, ReconciliationCursor
from mission_sync.scheduler import Scheduler
from mission_sync.status_resolver import DEFAULT_GRACE_SECONDS, is_ended, next_deadline_for, resolve_status

logger = logging.getLogger(__name__)

PREDICTOR_TIMER = "predictor"


class DeadlinePredictor:
	def __init__(
		self,
		reconciler: Reconciler,
		scheduler: Scheduler,
		config: PredictorConfig | None = None,
		grace_seconds: int = DEFAULT_GRACE_SECONDS,
	) -> None:
		self._reconciler = reconciler
		self._scheduler = scheduler
		self._config = config or PredictorConfig()
		self._grace = grace_seconds
		self._fired: dict[str, tuple[MissionStatus, int]] = {}

	def start(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		self._fired.pop(key, None)
		self._schedule(key, 0.0)

	def stop(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		self._scheduler.cancel(key, PREDICTOR_TIMER)
		self._fired.pop(key, None)

	def is_running(self, mission_id: str) -> bool:
		key = normalize_id(mission_id)
		return any(h.name == PREDICTOR_TIMER for h in self._scheduler.pending(key))

	def interval_for(self, status: MissionStatus | None, remaining: float | None) -> float:
		"""Tick interval: fast during the final stretch of the Active phase."""
		if (
			status == MissionStatus.ACTIVE
			and remaining is not None
			and 0 < remaining <= self._config.fast_window_seconds
		):
			return self._config.fast_tick_seconds
		return self._config.tick_seconds

	def _deadline(self, cursor: ReconciliationCursor) -> int | None:
		record = cursor.displayed
		status = cursor.displayed_status
		deadline = next_deadline_for(record, status)
		if (
			record is not None
			and status == MissionStatus.ARMING
			and record.players_joined < record.players_min
			and record.enrollment_end
		):
			# Under-filled Arming only lasts through the grace period.
			grace_end = record.enrollment_end + self._grace
			deadline = min(deadline, grace_end) if deadline else grace_end
		return deadline

	def _schedule(self, key: str, delay: float) -> None:
		cursor = self._reconciler.cursor(key)
		if cursor is None:
			return
		generation = cursor.generation
		self._scheduler.call_later(
			key, PREDICTOR_TIMER, delay,
			lambda: self.tick(key, generation),
			generation=generation,
		)

	async def tick(self, mission_id: str, generation: int | None = None) -> MissionStatus | None:
		"""Run one tick. Returns the predicted status when a local flip was applied.

		The next tick is armed before the confirming read is awaited, so the
		countdown keeps moving while that read is outstanding.
		"""
		key = normalize_id(mission_id)
		cursor = self._reconciler.cursor(key)
		if cursor is None or (generation is not None and cursor.generation != generation):
			return None
		generation = cursor.generation
		now = self._scheduler.now()
		self._reconciler.refresh_countdown(key, now)

		flipped: MissionStatus | None = None
		status = cursor.displayed_status
		record = cursor.displayed
		deadline = self._deadline(cursor)
		if record is not None and status is not None and deadline is not None and now >= deadline:
			if self._fired.get(key) != (status, deadline):
				self._fired[key] = (status, deadline)
				predicted = resolve_status(record, now, self._grace)
				if predicted != status:
					logger.info(
						"%s: %s deadline passed, predicting %s",
						key, status.label, predicted.label,
					)
					if self._reconciler.apply_local_prediction(key, predicted):
						flipped = predicted

		self._reschedule(key, generation)
		if flipped is not None:
			await self._reconciler.reconcile(key, force=True, reason="confirm")
			cursor = self._reconciler.cursor(key)
			if cursor is not None and cursor.generation == generation and is_ended(cursor.displayed_status):
				self._scheduler.cancel(key, PREDICTOR_TIMER)
		return flipped

	def _reschedule(self, key: str, generation: int) -> None:
		cursor = self._reconciler.cursor(key)
		if cursor is None or cursor.generation != generation:
			return
		status = cursor.displayed_status
		if status is not None and is_ended(status):
			logger.debug("Predictor for %s stopped: %s", key, status.label)
			self._scheduler.cancel(key, PREDICTOR_TIMER)
			return
		deadline = self._deadline(cursor)
		remaining = deadline - self._scheduler.now() if deadline is not None else None
		self._schedule(key, self.interval_for(status, remaining))
