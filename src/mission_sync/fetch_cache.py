"""Snapshot read coordination: tiered caching plus in-flight de-duplication.

Lookup order for ``fetch(mission_id, force)``:

1. micro-cache (~0.9 s), used even when forced, so near-simultaneous
   callers share one result;
2. active-view cache (~8 s), only for the foreground mission and only
   when not forced;
3. in-flight map, so an outstanding request is awaited instead of
   duplicated, across forced and unforced callers.

Failed reads are never cached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

from mission_sync.config import CacheConfig
from mission_sync.models import MissionRecord, normalize_id

logger = logging.getLogger(__name__)

LIST_KINDS = ("all", "not_ended", "joinable", "player")


class SnapshotSource(Protocol):
	async def fetch_snapshot(self, mission_id: str, force: bool = False) -> MissionRecord: ...


class ListSource(Protocol):
	async def fetch_list(self, kind: str, arg: str = "") -> list[MissionRecord]: ...


class FetchCoordinator:
	"""Caches snapshot and list reads for one client."""

	def __init__(
		self,
		source: SnapshotSource,
		config: CacheConfig | None = None,
		clock: Callable[[], float] = time.monotonic,
		list_source: ListSource | None = None,
	) -> None:
		self._source = source
		self._list_source = list_source
		self._config = config or CacheConfig()
		self._clock = clock
		self._entries: dict[str, tuple[float, MissionRecord]] = {}
		self._inflight: dict[str, asyncio.Task[MissionRecord]] = {}
		self._list_entries: dict[tuple[str, str], tuple[float, list[MissionRecord]]] = {}
		self._list_inflight: dict[tuple[str, str], asyncio.Task[list[MissionRecord]]] = {}
		self._foreground: str | None = None
		self.stats: dict[str, int] = {
			"fetches": 0,
			"micro_hits": 0,
			"view_hits": 0,
			"joined_inflight": 0,
			"list_fetches": 0,
			"list_hits": 0,
		}

	# -- foreground view --

	@property
	def foreground(self) -> str | None:
		return self._foreground

	def set_foreground(self, mission_id: str) -> None:
		self._foreground = normalize_id(mission_id)

	def clear_foreground(self, mission_id: str | None = None) -> None:
		if mission_id is None or normalize_id(mission_id) == self._foreground:
			self._foreground = None

	def invalidate(self, mission_id: str) -> None:
		self._entries.pop(normalize_id(mission_id), None)

	def cached(self, mission_id: str) -> MissionRecord | None:
		entry = self._entries.get(normalize_id(mission_id))
		return entry[1] if entry else None

	# -- single mission --

	async def fetch(self, mission_id: str, force: bool = False) -> MissionRecord:
		key = normalize_id(mission_id)
		now = self._clock()

		entry = self._entries.get(key)
		if entry is not None:
			age = now - entry[0]
			if age < self._config.micro_ttl_seconds:
				self.stats["micro_hits"] += 1
				return entry[1]
			if not force and key == self._foreground and age < self._config.active_view_ttl_seconds:
				self.stats["view_hits"] += 1
				return entry[1]

		task = self._inflight.get(key)
		if task is not None:
			self.stats["joined_inflight"] += 1
			return await asyncio.shield(task)

		task = asyncio.get_running_loop().create_task(self._load(key, force))
		self._inflight[key] = task
		return await asyncio.shield(task)

	async def _load(self, key: str, force: bool) -> MissionRecord:
		self.stats["fetches"] += 1
		try:
			record = await self._source.fetch_snapshot(key, force=force)
			self._entries[key] = (self._clock(), record)
			return record
		finally:
			self._inflight.pop(key, None)

	# -- collections --

	async def fetch_list(self, kind: str, arg: str = "") -> list[MissionRecord]:
		"""Fetch a mission collection, honoring the per-kind cooldown."""
		if kind not in LIST_KINDS:
			raise ValueError(f"Unknown list kind: {kind!r}")
		if self._list_source is None:
			raise RuntimeError("No list source configured")
		key = (kind, normalize_id(arg))
		now = self._clock()

		entry = self._list_entries.get(key)
		if entry is not None and now - entry[0] < self._config.list_cooldown_seconds:
			self.stats["list_hits"] += 1
			return list(entry[1])

		task = self._list_inflight.get(key)
		if task is None:
			task = asyncio.get_running_loop().create_task(self._load_list(key))
			self._list_inflight[key] = task
		return list(await asyncio.shield(task))

	async def _load_list(self, key: tuple[str, str]) -> list[MissionRecord]:
		assert self._list_source is not None
		self.stats["list_fetches"] += 1
		try:
			records = await self._list_source.fetch_list(key[0], key[1])
			self._list_entries[key] = (self._clock(), records)
			logger.debug("Fetched %d missions for list %s", len(records), key[0])
			return records
		finally:
			self._list_inflight.pop(key, None)
