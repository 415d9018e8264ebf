"""HTTP client for the mission snapshot API.

All ids are lower-cased before they reach a URL; the API groups and keys by
lower-case address. Transport failures surface as FetchError, payloads that
do not validate as SnapshotError.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from mission_sync.models import FetchError, MissionRecord, SnapshotError, normalize_id, parse_snapshot

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100


class ApiClient:
	"""Async snapshot/list/eligibility reader plus event kicks."""

	def __init__(
		self,
		base_url: str = "http://127.0.0.1:8080/api",
		timeout: float = 10.0,
		client: httpx.AsyncClient | None = None,
		clock: Callable[[], float] = time.monotonic,
		list_limit: int = MAX_LIST_LIMIT,
		eligibility_ttl: float = 10.0,
	) -> None:
		self._base = base_url.rstrip("/")
		self._owns_client = client is None
		self._client = client or httpx.AsyncClient(timeout=timeout)
		self._clock = clock
		self._list_limit = list_limit
		self._eligibility_ttl = eligibility_ttl
		self._eligibility: dict[str, tuple[float, dict[str, Any]]] = {}

	async def __aenter__(self) -> ApiClient:
		return self

	async def __aexit__(self, *exc: object) -> None:
		await self.close()

	async def close(self) -> None:
		if self._owns_client:
			await self._client.aclose()

	async def _get_json(self, path: str) -> Any:
		url = f"{self._base}{path}"
		try:
			resp = await self._client.get(url, headers={"Cache-Control": "no-store"})
			resp.raise_for_status()
		except httpx.HTTPError as exc:
			raise FetchError(f"GET {path} failed: {exc}") from exc
		try:
			return resp.json()
		except ValueError as exc:
			raise SnapshotError(f"GET {path} returned invalid JSON") from exc

	async def fetch_snapshot(self, mission_id: str, force: bool = False) -> MissionRecord:
		"""GET /missions/mission/{id}. ``force`` is advisory; every call hits the network."""
		addr = normalize_id(mission_id)
		if not addr:
			raise ValueError("mission_id is required")
		payload = await self._get_json(f"/missions/mission/{addr}")
		return parse_snapshot(payload)

	def list_path(self, kind: str, arg: str = "") -> str:
		if kind == "all":
			n = min(max(int(self._list_limit or 0), 1), MAX_LIST_LIMIT)
			return f"/missions/all/{n}"
		if kind == "not_ended":
			return "/missions/not-ended"
		if kind == "joinable":
			return "/missions/joinable"
		if kind == "player":
			addr = normalize_id(arg)
			if not addr:
				raise ValueError("player list needs a player address")
			return f"/missions/player/{addr}"
		raise ValueError(f"Unknown list kind: {kind!r}")

	async def fetch_list(self, kind: str, arg: str = "") -> list[MissionRecord]:
		path = self.list_path(kind, arg)
		payload = await self._get_json(path)
		if not isinstance(payload, list):
			raise SnapshotError(f"GET {path} did not return a list")
		return [parse_snapshot(row) for row in payload]

	async def get_eligibility(self, address: str) -> dict[str, Any]:
		"""GET /players/{addr}/eligibility, memoized per address.

		Errors come back as ``{"error": True, "message": ...}`` and are cached
		for the same window, so a failing endpoint is not hammered.
		"""
		addr = normalize_id(address)
		if not addr:
			return {"error": True, "message": "No address"}
		now = self._clock()
		hit = self._eligibility.get(addr)
		if hit is not None and now - hit[0] < self._eligibility_ttl:
			return hit[1]
		try:
			payload = await self._get_json(f"/players/{addr}/eligibility")
			result = payload if isinstance(payload, dict) else {"error": True, "message": "Unexpected payload"}
		except (FetchError, SnapshotError) as exc:
			logger.warning("Eligibility lookup for %s failed: %s", addr, exc)
			result = {"error": True, "message": str(exc)}
		self._eligibility[addr] = (now, result)
		return result

	async def post_event(self, kind: str, payload: dict[str, Any]) -> bool:
		"""POST /events/{kind}. Kicks usually answer 200/204 with no body."""
		path = f"/events/{kind}"
		try:
			resp = await self._client.post(f"{self._base}{path}", json=payload)
			resp.raise_for_status()
		except httpx.HTTPError as exc:
			raise FetchError(f"POST {path} failed: {exc}") from exc
		return True
