"""SyncEngine: wires the synchronization components and owns view lifecycle.

Opening a mission view creates its cursor, joins its push channel, performs
the first forced reconcile and starts the predictor (and, for the
foreground view, the watchdog). Closing it cancels every timer for that
mission and bumps the view generation, so late fetch results are dropped.
"""

from __future__ import annotations

import logging

from mission_sync.actions import ActionHandler, ActionSubmitter
from mission_sync.config import SyncConfig
from mission_sync.dedup import NotificationDeduplicator
from mission_sync.fetch_cache import FetchCoordinator, ListSource, SnapshotSource
from mission_sync.heartbeat import StalenessMonitor, Watchdog
from mission_sync.models import DisplayedState, normalize_id
from mission_sync.notifier import EventPoster, KickNotifier
from mission_sync.overlay import OptimisticOverlay
from mission_sync.predictor import DeadlinePredictor
from mission_sync.push import MissionUpdated, PushDispatcher, PushTransport, RoundResolved, StatusChanged
from mission_sync.reconciler import MergeDecision, Reconciler
from mission_sync.render import RenderSink
from mission_sync.scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)


class SyncEngine:
	def __init__(
		self,
		source: SnapshotSource,
		config: SyncConfig | None = None,
		*,
		scheduler: Scheduler | None = None,
		transport: PushTransport | None = None,
		render: RenderSink | None = None,
		poster: EventPoster | None = None,
		submitter: ActionSubmitter | None = None,
		list_source: ListSource | None = None,
	) -> None:
		self.config = config or SyncConfig()
		cfg = self.config
		self.scheduler = scheduler or AsyncioScheduler()
		self.fetcher = FetchCoordinator(source, cfg.cache, clock=self.scheduler.now, list_source=list_source)
		self.overlay = OptimisticOverlay(cfg.overlay)
		self.dedup = NotificationDeduplicator(cfg.dedup.window_seconds, clock=self.scheduler.now)
		self.notifier = KickNotifier(poster, self.dedup)
		self.staleness = StalenessMonitor(cfg.staleness)
		self.reconciler = Reconciler(
			self.fetcher,
			self.overlay,
			self.scheduler,
			render=render,
			notifier=self.notifier,
			config=cfg.reconciler,
			grace_seconds=cfg.resolver.grace_seconds,
			staleness=self.staleness,
		)
		self.predictor = DeadlinePredictor(
			self.reconciler, self.scheduler, cfg.predictor, grace_seconds=cfg.resolver.grace_seconds,
		)
		self.watchdog = Watchdog(self.reconciler, self.scheduler, cfg.staleness)
		self.actions = (
			ActionHandler(submitter, self.reconciler, self.overlay, self.notifier)
			if submitter is not None else None
		)
		self.advisories: list[str] = []

		self.push: PushDispatcher | None = None
		if transport is not None:
			self.push = PushDispatcher(transport, cfg.push, clock=self.scheduler.now)
			self.push.on_updated(self._on_updated)
			self.push.on_status_changed(self._on_status_changed)
			self.push.on_round_resolved(self._on_round_resolved)
			self.push.on_advisory(self._on_advisory)

	async def start(self) -> None:
		if self.push is not None and not await self.push.start():
			logger.warning("Running without live updates")

	async def close(self) -> None:
		for mission_id in self.reconciler.store.ids():
			await self.close_mission(mission_id)
		if self.push is not None:
			await self.push.stop()
		await self.reconciler.drain()

	# -- mission views --

	async def open_mission(self, mission_id: str, foreground: bool = True) -> MergeDecision:
		key = normalize_id(mission_id)
		if key in self.reconciler.store:
			await self.close_mission(key)
		self.reconciler.open(key)
		if foreground:
			self.fetcher.set_foreground(key)
		if self.push is not None and not await self.push.join(key):
			logger.warning("Live updates for %s pending until the push channel reconnects", key)
		decision = await self.reconciler.reconcile(key, force=True, reason="open")
		if key not in self.reconciler.store:
			return MergeDecision.CLOSED
		self.predictor.start(key)
		if foreground:
			self.watchdog.start(key)
		logger.info("Opened mission view %s (%s)", key, decision.value)
		return decision

	async def close_mission(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		self.predictor.stop(key)
		self.watchdog.stop(key)
		cancelled = self.scheduler.cancel_all(key)
		self.reconciler.close(key)
		self.fetcher.clear_foreground(key)
		if self.push is not None:
			await self.push.leave(key)
		logger.info("Closed mission view %s (%d timer(s) cancelled)", key, cancelled)

	def displayed(self, mission_id: str) -> DisplayedState | None:
		return self.reconciler.refresh_countdown(mission_id)

	# -- push handlers --

	async def _on_updated(self, event: MissionUpdated) -> None:
		if event.mission_id not in self.reconciler.store:
			return
		self.reconciler.note_push(event.mission_id)
		await self.reconciler.reconcile(event.mission_id, force=True, reason="push:updated")

	async def _on_status_changed(self, event: StatusChanged) -> None:
		if event.mission_id not in self.reconciler.store:
			return
		self.reconciler.note_push(event.mission_id)
		if self.reconciler.displayed_status(event.mission_id) == event.new_status:
			logger.debug("%s already shows %s", event.mission_id, event.new_status.label)
			return
		await self.reconciler.reconcile(event.mission_id, force=True, reason="push:status")

	async def _on_round_resolved(self, event: RoundResolved) -> None:
		if event.mission_id not in self.reconciler.store:
			return
		self.reconciler.note_push(event.mission_id)
		logger.info(
			"%s: round %d resolved, %d to %s",
			event.mission_id, event.round_number, event.amount, event.recipient or "-",
		)
		await self.reconciler.reconcile(event.mission_id, force=True, reason="push:round")

	def _on_advisory(self, message: str) -> None:
		self.advisories.append(message)
