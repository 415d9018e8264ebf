"""Data models for mission-sync state."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator


class SyncError(Exception):
	"""Base class for synchronization errors."""


class SnapshotError(SyncError):
	"""A snapshot payload could not be parsed into a mission record."""


class FetchError(SyncError):
	"""A snapshot or list read failed in transport (network, timeout, HTTP status)."""


class MissionStatus(IntEnum):
	PENDING = 0
	ENROLLING = 1
	ARMING = 2
	ACTIVE = 3
	PAUSED = 4
	PARTLY_SUCCESS = 5
	SUCCESS = 6
	FAILED = 7

	@property
	def label(self) -> str:
		return _STATUS_LABELS[self]

	@property
	def slug(self) -> str:
		return self.label.lower().replace(" ", "-")


_STATUS_LABELS: dict[MissionStatus, str] = {
	MissionStatus.PENDING: "Pending",
	MissionStatus.ENROLLING: "Enrolling",
	MissionStatus.ARMING: "Arming",
	MissionStatus.ACTIVE: "Active",
	MissionStatus.PAUSED: "Paused",
	MissionStatus.PARTLY_SUCCESS: "Partly Success",
	MissionStatus.SUCCESS: "Success",
	MissionStatus.FAILED: "Failed",
}

ENDED_STATUSES: frozenset[MissionStatus] = frozenset({
	MissionStatus.PARTLY_SUCCESS,
	MissionStatus.SUCCESS,
	MissionStatus.FAILED,
})


def normalize_id(value: str | None) -> str:
	"""Case-normalize a mission or player identifier."""
	return str(value or "").strip().lower()


@dataclass(frozen=True)
class RoundResult:
	"""A resolved round: who received the payout and how much."""

	round_number: int
	recipient: str = ""
	payout: int = 0


@dataclass(frozen=True)
class MissionRecord:
	"""Snapshot of a single mission at a point in time.

	Monetary fields are integers in minor units and must never pass through
	floating point. Time boundaries are Unix seconds; 0 means "not set".
	"""

	id: str
	status: MissionStatus = MissionStatus.PENDING
	name: str = ""
	mission_type: int = 0
	enrollment_start: int = 0
	enrollment_end: int = 0
	mission_start: int = 0
	mission_end: int = 0
	round_count: int = 0
	rounds_total: int = 0
	fee_amount: int = 0
	pool_start: int = 0
	pool_current: int = 0
	pool_initial: int = 0
	players_joined: int = 0
	players_min: int = 0
	players_max: int = 0
	pause_timestamp: int = 0
	round_pause_secs: int = 60
	last_round_pause_secs: int = 60
	updated_at: int = 0
	enrollments: tuple[str, ...] = ()
	rounds: tuple[RoundResult, ...] = ()

	def __post_init__(self) -> None:
		object.__setattr__(self, "id", normalize_id(self.id))
		object.__setattr__(self, "status", MissionStatus(self.status))

	@property
	def is_paused(self) -> bool:
		return self.pause_timestamp > 0

	def with_updates(self, **changes: Any) -> MissionRecord:
		return replace(self, **changes)

	def validate(self) -> list[str]:
		"""Return a list of invariant violations (empty when consistent)."""
		problems: list[str] = []
		bounds = [
			("enrollment_start", self.enrollment_start),
			("enrollment_end", self.enrollment_end),
			("mission_start", self.mission_start),
			("mission_end", self.mission_end),
		]
		set_bounds = [(n, v) for n, v in bounds if v > 0]
		for (prev_name, prev), (name, value) in zip(set_bounds, set_bounds[1:]):
			if value < prev:
				problems.append(f"{name} ({value}) precedes {prev_name} ({prev})")
		if self.round_count > self.rounds_total:
			problems.append(f"round_count {self.round_count} exceeds rounds_total {self.rounds_total}")
		if self.players_max and self.players_joined > self.players_max:
			problems.append(f"players_joined {self.players_joined} exceeds players_max {self.players_max}")
		for name in ("fee_amount", "pool_start", "pool_current", "pool_initial", "players_joined"):
			if getattr(self, name) < 0:
				problems.append(f"{name} is negative")
		return problems


# -- Snapshot wire schema --


class _MissionRowSchema(BaseModel, extra="ignore"):
	"""One mission row as served by the snapshot API."""

	mission_address: str
	status: int = 0
	name: str | None = None
	mission_type: int = 0
	enrollment_start: int = 0
	enrollment_end: int = 0
	enrollment_amount_wei: int = 0
	enrollment_min_players: int = 0
	enrollment_max_players: int = 0
	enrolled_players: int | None = None
	mission_start: int = 0
	mission_end: int = 0
	mission_rounds_total: int = 0
	round_count: int = 0
	cro_start_wei: int = 0
	cro_current_wei: int = 0
	cro_initial_wei: int | None = None
	pause_timestamp: int | None = None
	round_pause_secs: int | None = None
	last_round_pause_secs: int | None = None
	updated_at: int = 0

	@field_validator(
		"enrollment_amount_wei", "cro_start_wei", "cro_current_wei", "cro_initial_wei",
		mode="before",
	)
	@classmethod
	def _parse_amount(cls, value: Any) -> Any:
		# Amounts travel as decimal strings; floats would lose precision.
		if value is None or value == "":
			return 0
		if isinstance(value, float):
			raise ValueError("monetary amounts must not be floats")
		return int(str(value))

	@field_validator("status")
	@classmethod
	def _check_status(cls, value: int) -> int:
		MissionStatus(value)
		return value


class _EnrollmentSchema(BaseModel, extra="ignore"):
	player_address: str = ""
	refunded: bool = False


class _RoundSchema(BaseModel, extra="ignore"):
	round_number: int
	winner_address: str = ""
	payout_wei: int = 0

	@field_validator("payout_wei", mode="before")
	@classmethod
	def _parse_payout(cls, value: Any) -> Any:
		if value is None or value == "":
			return 0
		if isinstance(value, float):
			raise ValueError("monetary amounts must not be floats")
		return int(str(value))


class MissionSnapshotSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for a mission detail payload ``{mission, enrollments, rounds}``."""

	mission: _MissionRowSchema
	enrollments: list[_EnrollmentSchema] = []
	rounds: list[_RoundSchema] = []

	def to_record(self) -> MissionRecord:
		row = self.mission
		joined = row.enrolled_players
		if joined is None:
			joined = len(self.enrollments)
		return MissionRecord(
			id=row.mission_address,
			status=MissionStatus(row.status),
			name=row.name or "",
			mission_type=row.mission_type,
			enrollment_start=row.enrollment_start,
			enrollment_end=row.enrollment_end,
			mission_start=row.mission_start,
			mission_end=row.mission_end,
			round_count=row.round_count,
			rounds_total=row.mission_rounds_total,
			fee_amount=row.enrollment_amount_wei,
			pool_start=row.cro_start_wei,
			pool_current=row.cro_current_wei,
			pool_initial=row.cro_initial_wei if row.cro_initial_wei is not None else row.cro_start_wei,
			players_joined=joined,
			players_min=row.enrollment_min_players,
			players_max=row.enrollment_max_players,
			pause_timestamp=row.pause_timestamp or 0,
			round_pause_secs=row.round_pause_secs if row.round_pause_secs is not None else 60,
			last_round_pause_secs=(
				row.last_round_pause_secs if row.last_round_pause_secs is not None else 60
			),
			updated_at=row.updated_at,
			enrollments=tuple(normalize_id(e.player_address) for e in self.enrollments),
			rounds=tuple(
				RoundResult(
					round_number=r.round_number,
					recipient=normalize_id(r.winner_address),
					payout=r.payout_wei,
				)
				for r in self.rounds
			),
		)


def parse_snapshot(payload: Any) -> MissionRecord:
	"""Validate a snapshot payload (detail shape or bare row) into a MissionRecord.

	Raises:
		SnapshotError: If the payload does not match the snapshot schema.
	"""
	if not isinstance(payload, dict):
		raise SnapshotError(f"Snapshot payload must be an object, got {type(payload).__name__}")
	if "mission" not in payload:
		payload = {"mission": payload}
	try:
		return MissionSnapshotSchema.model_validate(payload).to_record()
	except (ValidationError, ValueError) as exc:
		raise SnapshotError(f"Invalid snapshot payload: {exc}") from exc


@dataclass
class DisplayedState:
	"""What the render sink is asked to show for one mission view."""

	mission_id: str
	status: MissionStatus
	record: MissionRecord
	generation: int = 0
	countdown_label: str = ""
	countdown_unit: str = ""
	progress: float = 0.0
	remaining: int = 0
	stale: bool = False
	predicted: bool = False
	details: dict[str, Any] = field(default_factory=dict)
