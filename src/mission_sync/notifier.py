"""Outbound "kick" signals telling the backend to refresh a mission early.

Kicks are fire-and-forget hints; the backend throttles them too. They are
de-duplicated per (kind, mission) so bursts of local events (a predicted
flip followed by its confirming snapshot) send a single request.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from mission_sync.dedup import NotificationDeduplicator
from mission_sync.models import ENDED_STATUSES, MissionStatus, SyncError, normalize_id

logger = logging.getLogger(__name__)

KICK_KINDS = ("created", "enrolled", "banked", "finalized")
PLAYER_KINDS = frozenset({"enrolled", "banked"})


class EventPoster(Protocol):
	async def post_event(self, kind: str, payload: dict[str, Any]) -> bool: ...


class KickNotifier:
	"""Sends de-duplicated kicks through an EventPoster."""

	def __init__(self, poster: EventPoster | None, dedup: NotificationDeduplicator | None = None) -> None:
		self._poster = poster
		self._dedup = dedup or NotificationDeduplicator()
		self.sent: int = 0
		self.suppressed: int = 0

	async def kick(self, kind: str, mission_id: str, player: str = "", tx_hash: str = "") -> bool:
		"""Send one kick. Returns True only if a request was made and accepted."""
		if kind not in KICK_KINDS:
			raise ValueError(f"Unknown kick kind: {kind!r}")
		mission = normalize_id(mission_id)
		player_lc = normalize_id(player)
		if not mission or (kind in PLAYER_KINDS and not player_lc):
			return False
		if not self._dedup.allow(kind, mission):
			self.suppressed += 1
			logger.debug("Suppressed duplicate %s kick for %s", kind, mission)
			return False
		if self._poster is None:
			return False

		payload: dict[str, Any] = {"mission": mission}
		if kind in PLAYER_KINDS:
			payload["player"] = player_lc
		if tx_hash:
			payload["txHash"] = tx_hash
		try:
			ok = await self._poster.post_event(kind, payload)
		except SyncError as exc:
			logger.warning("Failed to send %s kick for %s: %s", kind, mission, exc)
			return False
		if ok:
			self.sent += 1
		return ok

	async def mission_ended(self, mission_id: str, status: MissionStatus) -> bool:
		if status not in ENDED_STATUSES:
			return False
		logger.info("Mission %s ended: %s", normalize_id(mission_id), status.label)
		return await self.kick("finalized", mission_id)
