"""Clock-derived mission status resolution.

Pure functions only: the same (record, now) always yields the same answer,
so these are safe to use both for predicting the next status and for
sanity-checking snapshots.
"""

from __future__ import annotations

from mission_sync.models import ENDED_STATUSES, MissionRecord, MissionStatus

DEFAULT_GRACE_SECONDS = 30


def is_ended(status: MissionStatus | int | None) -> bool:
	return status is not None and MissionStatus(status) in ENDED_STATUSES


def is_pause_toggle(a: MissionStatus | int, b: MissionStatus | int) -> bool:
	"""True for the one reversible pair: Active <-> Paused."""
	return {int(a), int(b)} == {int(MissionStatus.ACTIVE), int(MissionStatus.PAUSED)}


def resolve_status(
	record: MissionRecord,
	now: float,
	grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> MissionStatus:
	"""Map (record, now) onto the mission status the clock implies.

	Between enrollment_end and mission_start an under-filled mission is
	Failed, except that a record already carrying Arming keeps Arming for
	``grace_seconds`` after enrollment_end. After mission_end the record's
	own ended sub-status wins; Success is assumed when it has none yet.
	"""
	if now < record.enrollment_start:
		return MissionStatus.PENDING
	if now < record.enrollment_end:
		return MissionStatus.ENROLLING
	if now < record.mission_start:
		if record.players_joined >= record.players_min:
			return MissionStatus.ARMING
		in_grace = now < record.enrollment_end + grace_seconds
		if in_grace and record.status == MissionStatus.ARMING:
			return MissionStatus.ARMING
		return MissionStatus.FAILED
	if now < record.mission_end:
		return MissionStatus.PAUSED if record.is_paused else MissionStatus.ACTIVE
	if record.status in ENDED_STATUSES:
		return record.status
	return MissionStatus.SUCCESS


def next_deadline_for(record: MissionRecord | None, status: MissionStatus | None) -> int | None:
	"""The instant the displayed status is expected to change on its own."""
	if record is None or status is None:
		return None
	if status == MissionStatus.PENDING:
		return record.enrollment_start or record.mission_start or None
	if status == MissionStatus.ENROLLING:
		return record.enrollment_end or None
	if status == MissionStatus.ARMING:
		return record.mission_start or None
	if status in (MissionStatus.ACTIVE, MissionStatus.PAUSED):
		return record.mission_end or None
	return None


def phase_window_for(
	record: MissionRecord | None,
	status: MissionStatus | None,
) -> tuple[int, int] | None:
	"""(start, end) of the phase the status belongs to, or None for ended missions."""
	if record is None or status is None or is_ended(status):
		return None
	end = next_deadline_for(record, status) or 0
	if status == MissionStatus.PENDING:
		start = record.updated_at
	elif status == MissionStatus.ENROLLING:
		start = record.enrollment_start
	elif status == MissionStatus.ARMING:
		start = record.enrollment_end
	else:
		start = record.mission_start
	return (start, end)


def cooldown_end(record: MissionRecord, default_pause_seconds: int = 60) -> int:
	"""When the pause after a resolved round ends (0 if not paused).

	The last round before the final one uses its own pause length.
	"""
	if not record.is_paused:
		return 0
	if record.rounds_total and record.round_count == record.rounds_total - 1:
		secs = record.last_round_pause_secs
	else:
		secs = record.round_pause_secs
	if secs <= 0:
		secs = default_pause_seconds
	return record.pause_timestamp + secs
