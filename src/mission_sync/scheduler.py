"""Cancellable timer scheduling keyed by mission id.

Every recurring or delayed piece of work (predictor ticks, retries, the
watchdog) goes through a Scheduler so a closing mission view can cancel all
of its timers at once, and tests can fast-forward a fake clock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], "Awaitable[Any] | None"]


@dataclass
class TimerHandle:
	"""A scheduled callback owned by one mission view generation."""

	mission_id: str
	name: str
	generation: int
	due: float
	callback: TimerCallback
	cancelled: bool = False
	_seq: int = 0
	_loop_handle: asyncio.TimerHandle | None = field(default=None, repr=False)
	_task: asyncio.Task[Any] | None = field(default=None, repr=False)

	@property
	def key(self) -> tuple[str, str]:
		return (self.mission_id, self.name)

	def cancel(self) -> None:
		self.cancelled = True
		if self._loop_handle is not None:
			self._loop_handle.cancel()
			self._loop_handle = None
		if self._task is not None and not self._task.done():
			self._task.cancel()


class Scheduler:
	"""Base scheduler: keyed timers with per-mission cancellation.

	A timer is identified by (mission_id, name); scheduling a timer under a
	key that is already pending replaces the earlier one.
	"""

	def __init__(self) -> None:
		self._timers: dict[tuple[str, str], TimerHandle] = {}
		self._seq = 0

	def now(self) -> float:
		raise NotImplementedError

	def call_later(
		self,
		mission_id: str,
		name: str,
		delay: float,
		callback: TimerCallback,
		generation: int = 0,
	) -> TimerHandle:
		self.cancel(mission_id, name)
		self._seq += 1
		handle = TimerHandle(
			mission_id=mission_id,
			name=name,
			generation=generation,
			due=self.now() + max(0.0, delay),
			callback=callback,
			_seq=self._seq,
		)
		self._timers[handle.key] = handle
		self._arm(handle, max(0.0, delay))
		return handle

	def _arm(self, handle: TimerHandle, delay: float) -> None:
		raise NotImplementedError

	def cancel(self, mission_id: str, name: str) -> bool:
		handle = self._timers.pop((mission_id, name), None)
		if handle is None:
			return False
		handle.cancel()
		return True

	def cancel_all(self, mission_id: str) -> int:
		"""Cancel every pending timer for a mission. Returns the count cancelled."""
		keys = [k for k in self._timers if k[0] == mission_id]
		for key in keys:
			self._timers.pop(key).cancel()
		if keys:
			logger.debug("Cancelled %d timer(s) for %s", len(keys), mission_id)
		return len(keys)

	def pending(self, mission_id: str | None = None) -> list[TimerHandle]:
		return sorted(
			(h for h in self._timers.values() if mission_id is None or h.mission_id == mission_id),
			key=lambda h: (h.due, h._seq),
		)

	def _release(self, handle: TimerHandle) -> bool:
		"""Drop a due handle from the table; False if it was replaced or cancelled."""
		if handle.cancelled:
			return False
		if self._timers.get(handle.key) is handle:
			del self._timers[handle.key]
		return True


class AsyncioScheduler(Scheduler):
	"""Wall-clock scheduler backed by the running event loop."""

	def __init__(self, clock: Callable[[], float] = time.time) -> None:
		super().__init__()
		self._clock = clock

	def now(self) -> float:
		return self._clock()

	def _arm(self, handle: TimerHandle, delay: float) -> None:
		loop = asyncio.get_running_loop()
		handle._loop_handle = loop.call_later(delay, self._fire, handle)

	def _fire(self, handle: TimerHandle) -> None:
		handle._loop_handle = None
		if not self._release(handle):
			return
		try:
			result = handle.callback()
		except Exception:
			logger.exception("Timer %s/%s failed", handle.mission_id, handle.name)
			return
		if inspect.isawaitable(result):
			handle._task = asyncio.ensure_future(result)
			handle._task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Task[Any]) -> None:
	if task.cancelled():
		return
	exc = task.exception()
	if exc is not None:
		logger.error("Scheduled task failed: %s", exc, exc_info=exc)


class ManualScheduler(Scheduler):
	"""Deterministic scheduler with a fake clock, advanced explicitly.

	Due callbacks run in (due time, insertion) order; awaitables they return
	are awaited before the next callback fires.
	"""

	def __init__(self, start: float = 0.0) -> None:
		super().__init__()
		self._now = float(start)

	def now(self) -> float:
		return self._now

	def _arm(self, handle: TimerHandle, delay: float) -> None:
		pass

	def set_time(self, value: float) -> None:
		self._now = float(value)

	async def advance(self, seconds: float) -> int:
		"""Move the clock forward, firing every timer that falls due. Returns fired count."""
		target = self._now + seconds
		fired = 0
		while True:
			due = [h for h in self.pending() if h.due <= target]
			if not due:
				break
			handle = due[0]
			self._now = max(self._now, handle.due)
			if not self._release(handle):
				continue
			fired += 1
			result = handle.callback()
			if inspect.isawaitable(result):
				await result
		self._now = target
		return fired

	async def run_due(self) -> int:
		return await self.advance(0.0)
