"""CLI interface for mission-sync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from mission_sync.api_client import ApiClient
from mission_sync.config import SyncConfig, load_config, validate_config
from mission_sync.countdown import format_countdown, format_remaining
from mission_sync.engine import SyncEngine
from mission_sync.fetch_cache import LIST_KINDS, FetchCoordinator
from mission_sync.models import MissionRecord, SyncError
from mission_sync.push import SsePushTransport
from mission_sync.render import LogRenderSink
from mission_sync.status_resolver import next_deadline_for, resolve_status

DEFAULT_CONFIG = "mission-sync.toml"


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="mission-sync",
		description="Mission Sync - keep a client view of missions consistent",
	)
	sub = parser.add_subparsers(dest="command")

	# mission-sync status
	status = sub.add_parser("status", help="Fetch one mission and show its resolved status")
	status.add_argument("mission_id")
	status.add_argument("--config", default=DEFAULT_CONFIG)

	# mission-sync watch
	watch = sub.add_parser("watch", help="Follow a mission live until interrupted")
	watch.add_argument("mission_id")
	watch.add_argument("--config", default=DEFAULT_CONFIG)

	# mission-sync lists
	lists = sub.add_parser("lists", help="Show a mission collection")
	lists.add_argument("kind", choices=LIST_KINDS)
	lists.add_argument("--player", default="", help="Player address for the 'player' list")
	lists.add_argument("--config", default=DEFAULT_CONFIG)

	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG)

	return parser


def _load(args: argparse.Namespace) -> SyncConfig:
	"""Load the config file if present, defaults otherwise."""
	if Path(args.config).exists():
		return load_config(args.config)
	return SyncConfig()


def _api(config: SyncConfig) -> ApiClient:
	return ApiClient(
		base_url=config.api.base_url,
		timeout=config.api.timeout_seconds,
		list_limit=config.api.list_limit,
		eligibility_ttl=config.cache.eligibility_ttl_seconds,
	)


def _format_record(record: MissionRecord, now: float, grace_seconds: int) -> list[str]:
	resolved = resolve_status(record, now, grace_seconds)
	lines = [
		f"Mission: {record.id}" + (f" ({record.name})" if record.name else ""),
		f"Status: {record.status.label} (clock says {resolved.label})",
		f"Players: {record.players_joined}/{record.players_max} (min {record.players_min})",
		f"Pool: {record.pool_current} (start {record.pool_start}, fee {record.fee_amount})",
		f"Rounds: {record.round_count}/{record.rounds_total}",
	]
	deadline = next_deadline_for(record, resolved)
	if deadline:
		remaining = max(0.0, deadline - now)
		lines.append(f"Next deadline: {format_remaining(remaining)} ({format_countdown(remaining)})")
	problems = record.validate()
	for problem in problems:
		lines.append(f"Warning: {problem}")
	return lines


async def _status(config: SyncConfig, mission_id: str) -> int:
	async with _api(config) as api:
		try:
			record = await api.fetch_snapshot(mission_id, force=True)
		except SyncError as exc:
			print(f"Error: {exc}")
			return 1
	for line in _format_record(record, time.time(), config.resolver.grace_seconds):
		print(line)
	return 0


def cmd_status(args: argparse.Namespace) -> int:
	"""Show a single mission snapshot."""
	config = _load(args)
	return asyncio.run(_status(config, args.mission_id))


async def _lists(config: SyncConfig, kind: str, player: str) -> int:
	async with _api(config) as api:
		fetcher = FetchCoordinator(api, config.cache, list_source=api)
		try:
			records = await fetcher.fetch_list(kind, player)
		except (SyncError, ValueError) as exc:
			print(f"Error: {exc}")
			return 1
	if not records:
		print("No missions.")
		return 0
	now = time.time()
	for record in records:
		resolved = resolve_status(record, now, config.resolver.grace_seconds)
		print(
			f"  {record.id}  {resolved.label:<14} "
			f"players {record.players_joined}/{record.players_max}  pool {record.pool_current}"
		)
	return 0


def cmd_lists(args: argparse.Namespace) -> int:
	"""Show one of the mission collections."""
	config = _load(args)
	return asyncio.run(_lists(config, args.kind, args.player))


async def _watch(config: SyncConfig, mission_id: str) -> int:
	async with _api(config) as api:
		transport = None
		if config.push.url:
			transport = SsePushTransport(
				config.push.url,
				subscribe_url=config.push.subscribe_url,
				timeout=config.api.timeout_seconds,
			)
		engine = SyncEngine(
			api,
			config,
			transport=transport,
			render=LogRenderSink(),
			poster=api,
			list_source=api,
		)
		await engine.start()
		try:
			await engine.open_mission(mission_id)
			await asyncio.Event().wait()
		finally:
			await engine.close()
	return 0


def cmd_watch(args: argparse.Namespace) -> int:
	"""Follow a mission until Ctrl-C."""
	config = _load(args)
	print(f"Watching {args.mission_id}. Press Ctrl-C to stop.")
	try:
		return asyncio.run(_watch(config, args.mission_id))
	except KeyboardInterrupt:
		print("Stopped.")
		return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"status": cmd_status,
	"watch": cmd_watch,
	"lists": cmd_lists,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except FileNotFoundError as exc:
		print(f"Error: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
