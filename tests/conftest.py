"""Shared pytest fixtures and factory functions for mission-sync tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mission_sync.config import CacheConfig, OverlayConfig, ReconcilerConfig
from mission_sync.fetch_cache import FetchCoordinator
from mission_sync.models import MissionRecord, MissionStatus
from mission_sync.overlay import OptimisticOverlay
from mission_sync.reconciler import Reconciler
from mission_sync.render import RecordingRenderSink
from mission_sync.scheduler import ManualScheduler

MISSION_ID = "0xabc"


def make_record(**overrides: Any) -> MissionRecord:
	"""Create a MissionRecord with sensible defaults, overridable via kwargs.

	Default timeline: enrollment 1000-2000, mission 3000-6000.
	"""
	defaults: dict[str, Any] = {
		"id": MISSION_ID,
		"status": MissionStatus.ENROLLING,
		"name": "Test mission",
		"enrollment_start": 1000,
		"enrollment_end": 2000,
		"mission_start": 3000,
		"mission_end": 6000,
		"rounds_total": 5,
		"fee_amount": 100,
		"pool_start": 1000,
		"pool_current": 1000,
		"pool_initial": 1000,
		"players_joined": 3,
		"players_min": 2,
		"players_max": 10,
		"updated_at": 900,
	}
	defaults.update(overrides)
	return MissionRecord(**defaults)


def make_row(**overrides: Any) -> dict[str, Any]:
	"""A mission row as the snapshot API serves it."""
	row: dict[str, Any] = {
		"mission_address": "0xABC",
		"name": "Test mission",
		"status": 1,
		"mission_type": 0,
		"enrollment_start": 1000,
		"enrollment_end": 2000,
		"enrollment_amount_wei": "100",
		"enrollment_min_players": 2,
		"enrollment_max_players": 10,
		"enrolled_players": 3,
		"mission_start": 3000,
		"mission_end": 6000,
		"mission_rounds_total": 5,
		"round_count": 0,
		"cro_start_wei": "1000",
		"cro_current_wei": "1000",
		"updated_at": 900,
	}
	row.update(overrides)
	return row


class FakeSource:
	"""Scriptable snapshot source that records every read."""

	def __init__(self, *records: MissionRecord) -> None:
		self.records: dict[str, MissionRecord] = {r.id: r for r in records}
		self.calls: list[tuple[str, bool]] = []
		self.errors: list[Exception] = []
		self.error: Exception | None = None
		self.gate: asyncio.Event | None = None

	def set(self, record: MissionRecord) -> None:
		self.records[record.id] = record

	async def fetch_snapshot(self, mission_id: str, force: bool = False) -> MissionRecord:
		self.calls.append((mission_id, force))
		await asyncio.sleep(0)
		if self.gate is not None:
			await self.gate.wait()
		if self.error is not None:
			raise self.error
		if self.errors:
			raise self.errors.pop(0)
		return self.records[mission_id]


class FakeListSource:
	def __init__(self, records: list[MissionRecord] | None = None) -> None:
		self.records = records or []
		self.calls: list[tuple[str, str]] = []

	async def fetch_list(self, kind: str, arg: str = "") -> list[MissionRecord]:
		self.calls.append((kind, arg))
		await asyncio.sleep(0)
		return list(self.records)


class FakePoster:
	def __init__(self) -> None:
		self.events: list[tuple[str, dict[str, Any]]] = []
		self.error: Exception | None = None

	async def post_event(self, kind: str, payload: dict[str, Any]) -> bool:
		if self.error is not None:
			raise self.error
		self.events.append((kind, payload))
		return True


async def settle(rounds: int = 20) -> None:
	"""Let pending tasks on the loop run."""
	for _ in range(rounds):
		await asyncio.sleep(0)


def build_reconciler(
	source: FakeSource,
	scheduler: ManualScheduler,
	**kwargs: Any,
) -> tuple[Reconciler, OptimisticOverlay, RecordingRenderSink]:
	sink = RecordingRenderSink()
	fetcher = FetchCoordinator(source, CacheConfig(), clock=scheduler.now)
	overlay = OptimisticOverlay(OverlayConfig())
	reconciler = Reconciler(
		fetcher,
		overlay,
		scheduler,
		render=sink,
		config=kwargs.pop("config", ReconcilerConfig()),
		**kwargs,
	)
	return reconciler, overlay, sink


@pytest.fixture()
def scheduler() -> ManualScheduler:
	"""Fake-clock scheduler starting at t=1500 (mid-enrollment for make_record)."""
	return ManualScheduler(start=1500.0)


@pytest.fixture()
def source() -> FakeSource:
	return FakeSource(make_record())
