"""Mission state synchronization engine."""

from __future__ import annotations

from mission_sync.config import SyncConfig, load_config
from mission_sync.engine import SyncEngine
from mission_sync.models import (
	DisplayedState,
	FetchError,
	MissionRecord,
	MissionStatus,
	SnapshotError,
	SyncError,
	parse_snapshot,
)
from mission_sync.reconciler import MergeDecision
from mission_sync.status_resolver import resolve_status

__all__ = [
	"DisplayedState",
	"FetchError",
	"MergeDecision",
	"MissionRecord",
	"MissionStatus",
	"SnapshotError",
	"SyncConfig",
	"SyncEngine",
	"SyncError",
	"load_config",
	"parse_snapshot",
	"resolve_status",
]
