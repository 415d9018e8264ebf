"""No-regression reconciler: the single place that decides what to display.

Every trigger (deadline predictor, push events, watchdog, action handlers)
ends up in ``Reconciler.reconcile``. A pass fetches a snapshot (possibly
forced), merges any live optimistic override, then runs it through the
guards below before it may replace the displayed state:

- regression: a lower status is discarded and retried later, except for
  the Active/Paused toggle;
- sticky pause: Paused -> Active is held back until the locally known
  cooldown end;
- stale pause: Active -> Paused needs a pause newer than the last one seen.

Merge and guard logic is synchronous once the snapshot is in hand, so for a
given mission no other pass can interleave mid-decision. Concurrent requests
are collapsed through ``busy``/``pending_retry`` into one extra pass.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mission_sync.config import ReconcilerConfig
from mission_sync.countdown import CountdownBinder, format_countdown
from mission_sync.fetch_cache import FetchCoordinator
from mission_sync.models import (
	DisplayedState,
	MissionRecord,
	MissionStatus,
	SyncError,
	normalize_id,
)
from mission_sync.overlay import OptimisticOverlay
from mission_sync.scheduler import Scheduler
from mission_sync.status_resolver import (
	DEFAULT_GRACE_SECONDS,
	cooldown_end,
	is_ended,
	is_pause_toggle,
	phase_window_for,
	resolve_status,
)

if TYPE_CHECKING:
	from mission_sync.heartbeat import StalenessMonitor
	from mission_sync.notifier import KickNotifier
	from mission_sync.render import RenderSink

logger = logging.getLogger(__name__)

RETRY_TIMER = "retry"
STICKY_TIMER = "sticky"


class MergeDecision(enum.Enum):
	ACCEPTED = "accepted"
	UNCHANGED = "unchanged"
	REGRESSION = "regression"
	STICKY_PAUSE = "sticky_pause"
	STALE_PAUSE = "stale_pause"
	FETCH_FAILED = "fetch_failed"
	DISCARDED_LATE = "discarded_late"
	COALESCED = "coalesced"
	CLOSED = "closed"


@dataclass
class ReconciliationCursor:
	"""Per-view reconciliation state. Only the Reconciler mutates it."""

	mission_id: str
	generation: int
	displayed_status: MissionStatus | None = None
	# Authoritative (or predicted) record without overrides; ``displayed`` is
	# the last rendered record with any live override merged in.
	snapshot: MissionRecord | None = None
	displayed: MissionRecord | None = None
	last_push_at: float = 0.0
	last_refresh_at: float = 0.0
	last_pause_timestamp: int = 0
	pause_sticky_until: float = 0.0
	resume_sticky_until: float = 0.0
	busy: bool = False
	pending_retry: bool = False
	pending_force: bool = False
	retry_count: int = 0
	predicted: bool = False
	stale: bool = False
	countdown: CountdownBinder = field(default_factory=CountdownBinder)


class CursorStore:
	"""Keyed cursor store. Generations keep counting across close/reopen."""

	def __init__(self) -> None:
		self._cursors: dict[str, ReconciliationCursor] = {}
		self._generations: dict[str, int] = {}

	def open(self, mission_id: str) -> ReconciliationCursor:
		key = normalize_id(mission_id)
		generation = self._generations.get(key, 0) + 1
		self._generations[key] = generation
		cursor = ReconciliationCursor(mission_id=key, generation=generation)
		self._cursors[key] = cursor
		return cursor

	def close(self, mission_id: str) -> ReconciliationCursor | None:
		key = normalize_id(mission_id)
		if key in self._cursors:
			self._generations[key] += 1
		return self._cursors.pop(key, None)

	def get(self, mission_id: str) -> ReconciliationCursor | None:
		return self._cursors.get(normalize_id(mission_id))

	def is_current(self, mission_id: str, generation: int) -> bool:
		cursor = self._cursors.get(normalize_id(mission_id))
		return cursor is not None and cursor.generation == generation

	def ids(self) -> list[str]:
		return list(self._cursors)

	def __contains__(self, mission_id: object) -> bool:
		return isinstance(mission_id, str) and normalize_id(mission_id) in self._cursors

	def __iter__(self) -> Iterator[ReconciliationCursor]:
		return iter(list(self._cursors.values()))

	def __len__(self) -> int:
		return len(self._cursors)


class Reconciler:
	"""Merges snapshots, overrides and local predictions into displayed state."""

	def __init__(
		self,
		fetcher: FetchCoordinator,
		overlay: OptimisticOverlay,
		scheduler: Scheduler,
		render: RenderSink | None = None,
		notifier: KickNotifier | None = None,
		config: ReconcilerConfig | None = None,
		grace_seconds: int = DEFAULT_GRACE_SECONDS,
		staleness: StalenessMonitor | None = None,
		store: CursorStore | None = None,
	) -> None:
		self._fetcher = fetcher
		self._overlay = overlay
		self._scheduler = scheduler
		self._render_sink = render
		self._notifier = notifier
		self._config = config or ReconcilerConfig()
		self._grace = grace_seconds
		self._staleness = staleness
		self.store = store or CursorStore()
		self._background: set[asyncio.Task[Any]] = set()

	# -- cursor lifecycle --

	def open(self, mission_id: str) -> ReconciliationCursor:
		key = normalize_id(mission_id)
		if key in self.store:
			self.close(key)
		cursor = self.store.open(key)
		logger.debug("Opened cursor for %s (generation %d)", key, cursor.generation)
		return cursor

	def close(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		self._scheduler.cancel(key, RETRY_TIMER)
		self._scheduler.cancel(key, STICKY_TIMER)
		cursor = self.store.close(key)
		if self._staleness is not None:
			self._staleness.forget(key)
		if cursor is not None:
			cursor.countdown.unbind()
			logger.debug("Closed cursor for %s", key)

	def cursor(self, mission_id: str) -> ReconciliationCursor | None:
		return self.store.get(mission_id)

	def displayed_status(self, mission_id: str) -> MissionStatus | None:
		cursor = self.store.get(mission_id)
		return cursor.displayed_status if cursor else None

	def displayed_record(self, mission_id: str) -> MissionRecord | None:
		cursor = self.store.get(mission_id)
		if cursor is None or cursor.snapshot is None:
			return None
		return self._overlay.apply(cursor.snapshot, self._scheduler.now())

	def now(self) -> float:
		return self._scheduler.now()

	def note_push(self, mission_id: str, at: float | None = None) -> None:
		cursor = self.store.get(mission_id)
		if cursor is not None:
			cursor.last_push_at = self._scheduler.now() if at is None else at

	# -- reconciliation --

	async def reconcile(self, mission_id: str, force: bool = False, reason: str = "") -> MergeDecision:
		"""Run one reconciliation pass, or queue one if a pass is in flight."""
		key = normalize_id(mission_id)
		cursor = self.store.get(key)
		if cursor is None:
			return MergeDecision.CLOSED
		if cursor.busy:
			cursor.pending_retry = True
			cursor.pending_force = cursor.pending_force or force
			logger.debug("Reconcile of %s (%s) coalesced into the pass in flight", key, reason or "-")
			return MergeDecision.COALESCED

		cursor.busy = True
		try:
			decision = await self._pass(cursor, force, reason)
			while cursor.pending_retry and self.store.is_current(key, cursor.generation):
				force = cursor.pending_force
				cursor.pending_retry = False
				cursor.pending_force = False
				decision = await self._pass(cursor, force, "coalesced")
		finally:
			cursor.busy = False
			cursor.pending_retry = False
			cursor.pending_force = False
		return decision

	async def _pass(self, cursor: ReconciliationCursor, force: bool, reason: str) -> MergeDecision:
		key = cursor.mission_id
		generation = cursor.generation
		try:
			record = await self._fetcher.fetch(key, force=force)
		except SyncError as exc:
			if not self.store.is_current(key, generation):
				return MergeDecision.DISCARDED_LATE
			logger.warning("Snapshot read for %s failed (%s): %s", key, reason or "-", exc)
			self._schedule_retry(cursor)
			self._render(cursor, self._scheduler.now())
			return MergeDecision.FETCH_FAILED

		if not self.store.is_current(key, generation):
			logger.debug("Discarding late snapshot for %s (generation %d)", key, generation)
			return MergeDecision.DISCARDED_LATE
		return self.apply_snapshot(key, record, reason=reason)

	def apply_snapshot(self, mission_id: str, record: MissionRecord, reason: str = "") -> MergeDecision:
		"""Merge one snapshot into the displayed state. Synchronous by design of the guards."""
		key = normalize_id(mission_id)
		cursor = self.store.get(key)
		if cursor is None:
			return MergeDecision.CLOSED
		now = self._scheduler.now()
		cursor.last_refresh_at = now

		merged = self._overlay.apply(record, now)
		new_status = merged.status
		implied = resolve_status(merged, now, self._grace)
		if implied != new_status:
			logger.debug(
				"Snapshot for %s reports %s while the clock implies %s",
				key, new_status.label, implied.label,
			)

		displayed = cursor.displayed_status
		if displayed is None or new_status == displayed:
			return self._accept(cursor, record, now, reason)

		if new_status < displayed and not is_pause_toggle(new_status, displayed):
			if cursor.predicted and is_ended(displayed) and is_ended(new_status):
				return self._accept(cursor, record, now, reason)
			logger.debug(
				"Discarding regressing snapshot for %s: %s < %s",
				key, new_status.label, displayed.label,
			)
			self._schedule_retry(cursor)
			return MergeDecision.REGRESSION

		if displayed == MissionStatus.PAUSED and new_status == MissionStatus.ACTIVE:
			if now < cursor.pause_sticky_until:
				logger.debug(
					"Holding %s in Paused until %.0f (snapshot says Active)",
					key, cursor.pause_sticky_until,
				)
				self._schedule_sticky_recheck(cursor, now)
				return MergeDecision.STICKY_PAUSE

		if displayed == MissionStatus.ACTIVE and new_status == MissionStatus.PAUSED:
			if not self._is_new_pause(cursor, merged, now):
				logger.debug(
					"Ignoring stale pause for %s (pause_timestamp %d, last known %d)",
					key, merged.pause_timestamp, cursor.last_pause_timestamp,
				)
				return MergeDecision.STALE_PAUSE

		return self._accept(cursor, record, now, reason)

	def _is_new_pause(self, cursor: ReconciliationCursor, record: MissionRecord, now: float) -> bool:
		if record.pause_timestamp:
			return record.pause_timestamp > cursor.last_pause_timestamp
		return now >= cursor.resume_sticky_until

	def _accept(
		self,
		cursor: ReconciliationCursor,
		record: MissionRecord,
		now: float,
		reason: str,
	) -> MergeDecision:
		previous = cursor.displayed_status
		status = record.status
		changed = previous != status
		new_pause = record.pause_timestamp > cursor.last_pause_timestamp

		cursor.retry_count = 0
		self._scheduler.cancel(cursor.mission_id, RETRY_TIMER)

		if not changed and not cursor.predicted and record == cursor.snapshot:
			self._render(cursor, now)
			return MergeDecision.UNCHANGED

		cursor.displayed_status = status
		cursor.snapshot = record
		cursor.predicted = False
		if new_pause:
			cursor.last_pause_timestamp = record.pause_timestamp
		if changed or (status == MissionStatus.PAUSED and new_pause):
			self._update_sticky(cursor, previous, record, now)
		self._rebind(cursor)

		if changed:
			logger.info(
				"%s: %s -> %s (%s)",
				cursor.mission_id,
				previous.label if previous is not None else "-",
				status.label,
				reason or "snapshot",
			)
		self._render(cursor, now)
		if changed and is_ended(status):
			self._notify_ended(cursor.mission_id, status)
		return MergeDecision.ACCEPTED

	def _update_sticky(
		self,
		cursor: ReconciliationCursor,
		previous: MissionStatus | None,
		record: MissionRecord,
		now: float,
	) -> None:
		if record.status == MissionStatus.PAUSED:
			cursor.pause_sticky_until = float(cooldown_end(record, self._config.default_pause_seconds))
			cursor.resume_sticky_until = 0.0
		elif record.status == MissionStatus.ACTIVE:
			cursor.pause_sticky_until = 0.0
			if previous == MissionStatus.PAUSED:
				cursor.resume_sticky_until = now + self._config.resume_sticky_seconds
		else:
			cursor.pause_sticky_until = 0.0
			cursor.resume_sticky_until = 0.0
			self._scheduler.cancel(cursor.mission_id, STICKY_TIMER)

	# -- local prediction --

	def apply_local_prediction(self, mission_id: str, new_status: MissionStatus) -> bool:
		"""Flip the displayed status from the clock alone, ahead of any snapshot.

		Returns False when there is nothing to flip or the flip would regress.
		"""
		cursor = self.store.get(mission_id)
		if cursor is None or cursor.snapshot is None or cursor.displayed_status is None:
			return False
		previous = cursor.displayed_status
		new_status = MissionStatus(new_status)
		if new_status == previous:
			return False
		if new_status < previous and not is_pause_toggle(new_status, previous):
			logger.debug("Refusing regressing prediction for %s: %s", cursor.mission_id, new_status.label)
			return False

		now = self._scheduler.now()
		changes: dict[str, Any] = {"status": new_status}
		if previous == MissionStatus.ENROLLING:
			# Pool at the close of enrollment is the round-one starting pool.
			changes["pool_start"] = self._overlay.apply(cursor.snapshot, now).pool_current
		record = cursor.snapshot.with_updates(**changes)

		cursor.displayed_status = new_status
		cursor.snapshot = record
		cursor.predicted = True
		self._update_sticky(cursor, previous, record, now)
		self._rebind(cursor)
		logger.info("%s: %s -> %s (predicted)", cursor.mission_id, previous.label, new_status.label)
		self._render(cursor, now)
		if is_ended(new_status):
			self._notify_ended(cursor.mission_id, new_status)
		return True

	async def predict_and_confirm(self, mission_id: str, new_status: MissionStatus) -> MergeDecision | None:
		"""Apply a local prediction, then ask for a forced confirming snapshot."""
		if not self.apply_local_prediction(mission_id, new_status):
			return None
		return await self.reconcile(mission_id, force=True, reason="confirm")

	def refresh_overlay(self, mission_id: str) -> bool:
		"""Re-render when the live override changes what is shown. Returns True if it did."""
		cursor = self.store.get(mission_id)
		if cursor is None or cursor.snapshot is None:
			return False
		now = self._scheduler.now()
		if self._overlay.apply(cursor.snapshot, now) == cursor.displayed:
			return False
		self._render(cursor, now)
		return True

	# -- countdown / rendering --

	def refresh_countdown(self, mission_id: str, now: float | None = None) -> DisplayedState | None:
		cursor = self.store.get(mission_id)
		if cursor is None:
			return None
		return self._render(cursor, self._scheduler.now() if now is None else now)

	def _rebind(self, cursor: ReconciliationCursor) -> None:
		window = phase_window_for(cursor.snapshot, cursor.displayed_status)
		if window is None:
			cursor.countdown.bind_finished()
			return
		cursor.countdown.bind(*window)

	def _render(self, cursor: ReconciliationCursor, now: float) -> DisplayedState | None:
		if cursor.snapshot is None or cursor.displayed_status is None:
			return None
		tick = cursor.countdown.tick(now)
		if self._staleness is not None:
			cursor.stale = self._staleness.evaluate(
				cursor.mission_id, cursor.last_refresh_at, cursor.last_push_at, now,
			)
		record = self._overlay.apply(cursor.snapshot, now)
		cursor.displayed = record
		state = DisplayedState(
			mission_id=cursor.mission_id,
			status=cursor.displayed_status,
			record=record,
			generation=cursor.generation,
			countdown_label=tick.label,
			countdown_unit=tick.unit,
			progress=tick.progress,
			remaining=tick.remaining,
			stale=cursor.stale,
			predicted=cursor.predicted,
			details={
				"countdown": format_countdown(tick.remaining) if tick.label else "",
				"players": f"{record.players_joined}/{record.players_max}",
				"pool_start": record.pool_start,
				"pool_current": record.pool_current,
				"rounds": f"{record.round_count}/{record.rounds_total}",
			},
		)
		if self._render_sink is not None:
			self._render_sink.render(state)
		return state

	# -- retries and side effects --

	def _schedule_retry(self, cursor: ReconciliationCursor) -> bool:
		if cursor.retry_count >= self._config.max_retries:
			logger.info(
				"Giving up on %s after %d retries; waiting for the next trigger",
				cursor.mission_id, cursor.retry_count,
			)
			return False
		cursor.retry_count += 1
		key = cursor.mission_id
		generation = cursor.generation
		self._scheduler.call_later(
			key, RETRY_TIMER, self._config.retry_delay_seconds,
			lambda: self._fire(key, generation, "retry"),
			generation=generation,
		)
		return True

	def _schedule_sticky_recheck(self, cursor: ReconciliationCursor, now: float) -> None:
		key = cursor.mission_id
		generation = cursor.generation
		self._scheduler.call_later(
			key, STICKY_TIMER, max(0.0, cursor.pause_sticky_until - now),
			lambda: self._fire(key, generation, "cooldown-end"),
			generation=generation,
		)

	async def _fire(self, key: str, generation: int, reason: str) -> MergeDecision:
		if not self.store.is_current(key, generation):
			return MergeDecision.DISCARDED_LATE
		return await self.reconcile(key, force=True, reason=reason)

	def _notify_ended(self, mission_id: str, status: MissionStatus) -> None:
		if self._notifier is None:
			return
		task = asyncio.get_running_loop().create_task(self._notifier.mission_ended(mission_id, status))
		self._background.add(task)
		task.add_done_callback(self._finish_background)

	def _finish_background(self, task: asyncio.Task[Any]) -> None:
		self._background.discard(task)
		if not task.cancelled() and task.exception() is not None:
			logger.error("Mission-ended notice failed: %s", task.exception())

	async def drain(self) -> None:
		"""Wait for outstanding background notices."""
		if self._background:
			await asyncio.gather(*list(self._background), return_exceptions=True)
