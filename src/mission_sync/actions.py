"""User action handlers (join, resolve round).

Only the *outcome* of an action is consumed here; transport belongs to the
submitter. An optimistic override is installed strictly after a COMMITTED
outcome, never on submission, and cancelled or failed actions are never
treated as success.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from mission_sync.models import SyncError, normalize_id
from mission_sync.notifier import KickNotifier
from mission_sync.overlay import OptimisticOverlay
from mission_sync.reconciler import Reconciler

logger = logging.getLogger(__name__)


class ActionKind(str, enum.Enum):
	JOIN = "join"
	RESOLVE_ROUND = "resolve_round"


class ActionOutcome(str, enum.Enum):
	COMMITTED = "committed"
	REJECTED = "rejected"
	CANCELLED = "cancelled"
	FAILED = "failed"


@dataclass(frozen=True)
class ActionResult:
	outcome: ActionOutcome
	detail: str = ""
	amount: int | None = None
	player: str = ""
	tx_hash: str = ""

	@property
	def committed(self) -> bool:
		return self.outcome is ActionOutcome.COMMITTED


class ActionSubmitter(Protocol):
	async def submit_action(self, kind: ActionKind, mission_id: str) -> ActionResult: ...


class ActionInFlightError(SyncError):
	"""Another action for the same mission has not finished yet."""


class ActionHandler:
	"""Serializes actions per mission and applies their committed effects."""

	def __init__(
		self,
		submitter: ActionSubmitter,
		reconciler: Reconciler,
		overlay: OptimisticOverlay,
		notifier: KickNotifier | None = None,
	) -> None:
		self._submitter = submitter
		self._reconciler = reconciler
		self._overlay = overlay
		self._notifier = notifier
		self._inflight: set[str] = set()

	def in_flight(self, mission_id: str) -> bool:
		return normalize_id(mission_id) in self._inflight

	async def join(self, mission_id: str, player: str = "") -> ActionResult:
		return await self._run(ActionKind.JOIN, mission_id, player)

	async def resolve_round(self, mission_id: str, player: str = "") -> ActionResult:
		return await self._run(ActionKind.RESOLVE_ROUND, mission_id, player)

	async def _run(self, kind: ActionKind, mission_id: str, player: str) -> ActionResult:
		key = normalize_id(mission_id)
		if key in self._inflight:
			raise ActionInFlightError(f"An action for {key} is already in flight")
		self._inflight.add(key)
		try:
			try:
				result = await self._submitter.submit_action(kind, key)
			except SyncError as exc:
				result = ActionResult(outcome=ActionOutcome.FAILED, detail=str(exc))

			if result.outcome is ActionOutcome.COMMITTED:
				await self._on_committed(kind, key, result, player)
			elif result.outcome is ActionOutcome.CANCELLED:
				logger.info("%s on %s cancelled by user", kind.value, key)
			else:
				logger.warning("%s on %s %s: %s", kind.value, key, result.outcome.value, result.detail or "-")
			return result
		finally:
			self._inflight.discard(key)

	async def _on_committed(self, kind: ActionKind, key: str, result: ActionResult, player: str) -> None:
		record = self._reconciler.displayed_record(key)
		now = self._reconciler.now()
		who = result.player or player

		if kind is ActionKind.JOIN:
			if record is not None:
				self._overlay.install_join(key, record, now)
			kick = "enrolled"
		else:
			if record is not None and result.amount is not None:
				self._overlay.install_round_resolution(key, record, result.amount, now)
			kick = "banked"

		logger.info("%s on %s committed", kind.value, key)
		self._reconciler.refresh_overlay(key)
		if self._notifier is not None:
			await self._notifier.kick(kick, key, player=who, tx_hash=result.tx_hash)
		await self._reconciler.reconcile(key, force=True, reason=kind.value)
