"""Tests for staleness detection and the silence watchdog."""

from __future__ import annotations

import logging

import pytest
from conftest import MISSION_ID, FakeSource, build_reconciler, make_record

from mission_sync.config import StalenessConfig
from mission_sync.heartbeat import StalenessMonitor, Watchdog
from mission_sync.models import FetchError, MissionStatus
from mission_sync.reconciler import Reconciler
from mission_sync.scheduler import ManualScheduler


def _watchdog_due(scheduler: ManualScheduler) -> float | None:
	for handle in scheduler.pending(MISSION_ID):
		if handle.name == "watchdog":
			return handle.due
	return None


class TestStalenessMonitor:
	def test_requires_both_signals_quiet(self) -> None:
		monitor = StalenessMonitor(StalenessConfig(stale_after_seconds=60, push_silence_seconds=60))
		assert not monitor.evaluate(MISSION_ID, last_refresh_at=0, last_push_at=0, now=30)
		assert not monitor.evaluate(MISSION_ID, last_refresh_at=0, last_push_at=90, now=100)
		assert not monitor.evaluate(MISSION_ID, last_refresh_at=90, last_push_at=0, now=100)
		assert monitor.evaluate(MISSION_ID, last_refresh_at=0, last_push_at=0, now=100)
		assert monitor.is_stale(MISSION_ID)

	def test_transitions_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
		monitor = StalenessMonitor()
		with caplog.at_level(logging.INFO, logger="mission_sync.heartbeat"):
			monitor.evaluate(MISSION_ID, 0, 0, 100)
			monitor.evaluate(MISSION_ID, 0, 0, 110)
			monitor.evaluate(MISSION_ID, 110, 0, 111)
		warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
		assert len(warnings) == 1
		assert any("fresh again" in msg for msg in caplog.messages)
		assert not monitor.is_stale(MISSION_ID)

	def test_forget(self) -> None:
		monitor = StalenessMonitor()
		monitor.evaluate(MISSION_ID, 0, 0, 100)
		monitor.forget("0xABC")
		assert not monitor.is_stale(MISSION_ID)

	@pytest.mark.asyncio
	async def test_stale_flag_rendered(self, source: FakeSource, scheduler: ManualScheduler) -> None:
		reconciler, _, sink = build_reconciler(source, scheduler, staleness=StalenessMonitor())
		reconciler.open(MISSION_ID)
		await reconciler.reconcile(MISSION_ID)
		state = sink.last(MISSION_ID)
		assert state is not None
		assert not state.stale

		scheduler.set_time(1600)
		state = reconciler.refresh_countdown(MISSION_ID)
		assert state is not None
		assert state.stale

		reconciler.note_push(MISSION_ID)
		state = reconciler.refresh_countdown(MISSION_ID)
		assert state is not None
		assert not state.stale


class TestWatchdog:
	async def _open(self, source: FakeSource, scheduler: ManualScheduler) -> tuple[Watchdog, Reconciler]:
		reconciler, _, _ = build_reconciler(source, scheduler)
		reconciler.open(MISSION_ID)
		await reconciler.reconcile(MISSION_ID)
		watchdog = Watchdog(reconciler, scheduler, StalenessConfig())
		watchdog.start(MISSION_ID)
		return watchdog, reconciler

	def test_backoff_delay(self) -> None:
		watchdog = Watchdog(None, None, StalenessConfig())  # type: ignore[arg-type]
		assert watchdog.backoff_delay(0) == 30
		assert watchdog.backoff_delay(1) == 15
		assert watchdog.backoff_delay(2) == 30
		assert watchdog.backoff_delay(3) == 60
		assert watchdog.backoff_delay(6) == 60

	@pytest.mark.asyncio
	async def test_reconciles_after_silence(self, source: FakeSource, scheduler: ManualScheduler) -> None:
		watchdog, _ = await self._open(source, scheduler)
		assert _watchdog_due(scheduler) == 1530

		await scheduler.advance(30)
		assert source.calls[-1] == (MISSION_ID, True)
		assert len(source.calls) == 2
		assert watchdog.failures(MISSION_ID) == 0
		assert _watchdog_due(scheduler) == 1560

	@pytest.mark.asyncio
	async def test_recent_push_postpones_check(self, source: FakeSource, scheduler: ManualScheduler) -> None:
		_, reconciler = await self._open(source, scheduler)
		reconciler.note_push(MISSION_ID, at=1520)
		await scheduler.advance(30)
		assert len(source.calls) == 1
		assert _watchdog_due(scheduler) == 1550

	@pytest.mark.asyncio
	async def test_backs_off_on_failed_reads(self, source: FakeSource, scheduler: ManualScheduler) -> None:
		watchdog, _ = await self._open(source, scheduler)
		source.error = FetchError("offline")

		await scheduler.advance(30)
		assert watchdog.failures(MISSION_ID) == 1
		assert _watchdog_due(scheduler) == 1545

		await scheduler.advance(15)
		assert watchdog.failures(MISSION_ID) == 2
		assert _watchdog_due(scheduler) == 1575

		source.error = None
		await scheduler.advance(30)
		assert watchdog.failures(MISSION_ID) == 0
		assert _watchdog_due(scheduler) == 1605

	@pytest.mark.asyncio
	async def test_stops_once_mission_ended(self, source: FakeSource, scheduler: ManualScheduler) -> None:
		watchdog, reconciler = await self._open(source, scheduler)
		reconciler.apply_snapshot(MISSION_ID, make_record(status=MissionStatus.FAILED))
		await scheduler.advance(30)
		assert _watchdog_due(scheduler) is None
		assert len(source.calls) == 1

	@pytest.mark.asyncio
	async def test_stop(self, source: FakeSource, scheduler: ManualScheduler) -> None:
		watchdog, _ = await self._open(source, scheduler)
		watchdog.stop(MISSION_ID)
		assert _watchdog_due(scheduler) is None
