"""Render sinks: where displayed mission state is handed off."""

from __future__ import annotations

import logging
from typing import Protocol

from mission_sync.models import DisplayedState, MissionStatus, normalize_id

logger = logging.getLogger(__name__)


class RenderSink(Protocol):
	def render(self, state: DisplayedState) -> None: ...


class LogRenderSink:
	"""Logs status changes at info and countdown-only updates at debug."""

	def __init__(self) -> None:
		self._last_status: dict[str, MissionStatus] = {}
		self._last_label: dict[str, str] = {}

	def render(self, state: DisplayedState) -> None:
		previous = self._last_status.get(state.mission_id)
		if previous != state.status:
			self._last_status[state.mission_id] = state.status
			logger.info(
				"%s: %s%s (players %d/%d, pool %d, round %d/%d)%s",
				state.mission_id,
				state.status.label,
				" [predicted]" if state.predicted else "",
				state.record.players_joined,
				state.record.players_max,
				state.record.pool_current,
				state.record.round_count,
				state.record.rounds_total,
				" [stale]" if state.stale else "",
			)
		elif self._last_label.get(state.mission_id) != state.countdown_label:
			logger.debug("%s: %s %.0f%%", state.mission_id, state.countdown_label, state.progress * 100)
		self._last_label[state.mission_id] = state.countdown_label


class RecordingRenderSink:
	"""Keeps every rendered state, for embedding and tests."""

	def __init__(self) -> None:
		self.history: list[DisplayedState] = []

	def render(self, state: DisplayedState) -> None:
		self.history.append(state)

	def for_mission(self, mission_id: str) -> list[DisplayedState]:
		key = normalize_id(mission_id)
		return [s for s in self.history if s.mission_id == key]

	def last(self, mission_id: str) -> DisplayedState | None:
		states = self.for_mission(mission_id)
		return states[-1] if states else None

	def statuses(self, mission_id: str) -> list[MissionStatus]:
		"""Distinct consecutive statuses rendered for a mission."""
		out: list[MissionStatus] = []
		for state in self.for_mission(mission_id):
			if not out or out[-1] != state.status:
				out.append(state.status)
		return out
