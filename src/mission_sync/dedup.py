"""Suppress repeated outbound signals for the same (kind, mission) pair."""

from __future__ import annotations

import time
from collections.abc import Callable

from mission_sync.models import normalize_id


class NotificationDeduplicator:
	"""Allows at most one send per (kind, mission_id) within ``window_seconds``.

	Only allowed sends refresh the timestamp, so a steady stream of
	duplicates still lets one through every window.
	"""

	def __init__(
		self,
		window_seconds: float = 2.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._window = window_seconds
		self._clock = clock
		self._last_sent: dict[tuple[str, str], float] = {}
		self._last_prune: float | None = None

	def allow(self, kind: str, mission_id: str, now: float | None = None) -> bool:
		if now is None:
			now = self._clock()
		# Sweep expired keys at most once per window.
		if self._last_prune is None or now - self._last_prune >= self._window:
			self.prune(now)
		key = (kind, normalize_id(mission_id))
		last = self._last_sent.get(key)
		if last is not None and now - last < self._window:
			return False
		self._last_sent[key] = now
		return True

	def prune(self, now: float | None = None) -> int:
		"""Forget keys whose window has passed. Returns how many were dropped."""
		if now is None:
			now = self._clock()
		expired = [k for k, ts in self._last_sent.items() if now - ts >= self._window]
		for key in expired:
			del self._last_sent[key]
		self._last_prune = now
		return len(expired)

	def __len__(self) -> int:
		return len(self._last_sent)
