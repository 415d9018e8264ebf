"""Push event channel: typed events, subscriptions and transparent reconnects.

The dispatcher keeps one logical connection to the backend hub. Callers join
and leave mission channels by id; when the connection drops, it reconnects
with capped exponential backoff and replays ``SubscribeMission`` for every
channel in the subscription set. Registered handlers are untouched by a
reconnect.

Wire messages follow the hub invocation shape::

	{"target": "StatusChanged", "arguments": ["0xabc...", 4]}
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from mission_sync.config import PushConfig
from mission_sync.models import MissionStatus, SyncError, normalize_id

logger = logging.getLogger(__name__)

SUBSCRIBE = "SubscribeMission"
UNSUBSCRIBE = "UnsubscribeMission"


class PushDisconnected(SyncError):
	"""The push connection is down (or could not be established)."""


# -- events --


@dataclass(frozen=True)
class MissionUpdated:
	mission_id: str
	reason: str = ""


@dataclass(frozen=True)
class StatusChanged:
	mission_id: str
	new_status: MissionStatus


@dataclass(frozen=True)
class RoundResolved:
	mission_id: str
	round_number: int
	recipient: str
	amount: int


PushEvent = MissionUpdated | StatusChanged | RoundResolved
Handler = Callable[[Any], "Awaitable[None] | None"]


class _Invocation(BaseModel, extra="ignore"):
	target: str
	arguments: list[Any] = []


def _parse_amount(value: Any) -> int:
	if isinstance(value, float):
		raise ValueError("monetary amounts must not be floats")
	return int(str(value))


def parse_event(message: Any) -> PushEvent | None:
	"""Convert one hub message into a typed event. Unknown targets yield None."""
	try:
		inv = _Invocation.model_validate(message)
	except ValidationError as exc:
		logger.warning("Malformed push message: %s", exc)
		return None

	args = inv.arguments
	try:
		if inv.target == "MissionUpdated" and len(args) >= 1:
			reason = str(args[1]) if len(args) > 1 and args[1] is not None else ""
			return MissionUpdated(mission_id=normalize_id(args[0]), reason=reason)
		if inv.target == "StatusChanged" and len(args) >= 2:
			return StatusChanged(mission_id=normalize_id(args[0]), new_status=MissionStatus(int(args[1])))
		if inv.target == "RoundResult" and len(args) >= 4:
			return RoundResolved(
				mission_id=normalize_id(args[0]),
				round_number=int(args[1]),
				recipient=normalize_id(args[2]),
				amount=_parse_amount(args[3]),
			)
	except (TypeError, ValueError) as exc:
		logger.warning("Bad %s arguments %r: %s", inv.target, args, exc)
		return None

	logger.debug("Ignoring push target %s", inv.target)
	return None


# -- transports --


class PushTransport(Protocol):
	async def connect(self) -> None: ...

	async def invoke(self, method: str, key: str) -> None: ...

	def messages(self) -> AsyncIterator[dict[str, Any]]: ...

	async def close(self) -> None: ...


_DROP = object()
_CLOSE = object()


class MemoryPushTransport:
	"""In-process hub. Delivers only to subscribed channels, like the server."""

	def __init__(self) -> None:
		self._queue: asyncio.Queue[Any] = asyncio.Queue()
		self.connected = False
		self.connect_calls = 0
		self.fail_connects = 0
		self.subscribed: set[str] = set()
		self.invocations: list[tuple[str, str]] = []

	async def connect(self) -> None:
		self.connect_calls += 1
		if self.fail_connects > 0:
			self.fail_connects -= 1
			raise PushDisconnected("connection refused")
		self.connected = True

	async def invoke(self, method: str, key: str) -> None:
		if not self.connected:
			raise PushDisconnected(f"{method} while disconnected")
		self.invocations.append((method, key))
		if method == SUBSCRIBE:
			self.subscribed.add(key)
		elif method == UNSUBSCRIBE:
			self.subscribed.discard(key)

	def publish(self, target: str, *arguments: Any) -> bool:
		"""Queue a hub message. Returns False when nobody is subscribed to it."""
		if not self.connected or not arguments or normalize_id(arguments[0]) not in self.subscribed:
			return False
		self._queue.put_nowait({"target": target, "arguments": list(arguments)})
		return True

	def drop(self) -> None:
		"""Simulate a server-side disconnect; the hub forgets all groups."""
		self.connected = False
		self.subscribed.clear()
		self._queue.put_nowait(_DROP)

	async def messages(self) -> AsyncIterator[dict[str, Any]]:
		while True:
			item = await self._queue.get()
			if item is _DROP:
				raise PushDisconnected("connection dropped")
			if item is _CLOSE:
				return
			yield item

	async def close(self) -> None:
		self.connected = False
		self._queue.put_nowait(_CLOSE)


class SsePushTransport:
	"""Server-sent events over httpx. Subscriptions are POSTed to ``subscribe_url``."""

	def __init__(
		self,
		url: str,
		subscribe_url: str = "",
		client: httpx.AsyncClient | None = None,
		timeout: float = 10.0,
	) -> None:
		self._url = url
		self._subscribe_url = subscribe_url
		self._owns_client = client is None
		self._client = client
		self._timeout = timeout
		self._response: httpx.Response | None = None
		self._connection_id = ""

	async def connect(self) -> None:
		if self._client is None:
			# Reads on an event stream block indefinitely between events.
			self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, read=None))
		await self._close_response()
		request = self._client.build_request("GET", self._url, headers={"Accept": "text/event-stream"})
		try:
			response = await self._client.send(request, stream=True)
			response.raise_for_status()
		except httpx.HTTPError as exc:
			raise PushDisconnected(f"SSE connect to {self._url} failed: {exc}") from exc
		self._response = response
		self._connection_id = response.headers.get("x-connection-id", "")

	async def invoke(self, method: str, key: str) -> None:
		if self._client is None or not self._subscribe_url:
			raise PushDisconnected("SSE transport has no subscribe endpoint")
		body = {"method": method, "mission": key, "connectionId": self._connection_id}
		try:
			resp = await self._client.post(self._subscribe_url, json=body)
			resp.raise_for_status()
		except httpx.HTTPError as exc:
			raise PushDisconnected(f"{method} {key} failed: {exc}") from exc

	async def messages(self) -> AsyncIterator[dict[str, Any]]:
		if self._response is None:
			raise PushDisconnected("SSE stream is not connected")
		data: list[str] = []
		try:
			async for line in self._response.aiter_lines():
				if line.startswith("data:"):
					data.append(line[5:].strip())
					continue
				if line or not data:
					continue
				raw = "\n".join(data)
				data = []
				try:
					payload = json.loads(raw)
				except json.JSONDecodeError:
					logger.warning("Skipping non-JSON SSE event: %s", raw[:200])
					continue
				yield payload
		except httpx.HTTPError as exc:
			raise PushDisconnected(f"SSE stream broke: {exc}") from exc
		raise PushDisconnected("SSE stream ended")

	async def _close_response(self) -> None:
		if self._response is not None:
			await self._response.aclose()
			self._response = None

	async def close(self) -> None:
		await self._close_response()
		if self._owns_client and self._client is not None:
			await self._client.aclose()
			self._client = None


# -- dispatcher --


class PushDispatcher:
	"""Routes push events to handlers and keeps the subscription set alive."""

	def __init__(
		self,
		transport: PushTransport,
		config: PushConfig | None = None,
		clock: Callable[[], float] = time.time,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
	) -> None:
		self._transport = transport
		self._config = config or PushConfig()
		self._clock = clock
		self._sleep = sleep
		self._handlers: dict[type, list[Handler]] = {
			MissionUpdated: [],
			StatusChanged: [],
			RoundResolved: [],
		}
		self._advisory_handlers: list[Callable[[str], None]] = []
		self._subscriptions: set[str] = set()
		self._connected = False
		self._stopping = False
		self._task: asyncio.Task[None] | None = None
		self._last_push_by_id: dict[str, float] = {}
		self.last_push_at: float = 0.0
		self.reconnects: int = 0

	# -- handler registration --

	def on_updated(self, handler: Handler) -> None:
		self._handlers[MissionUpdated].append(handler)

	def on_status_changed(self, handler: Handler) -> None:
		self._handlers[StatusChanged].append(handler)

	def on_round_resolved(self, handler: Handler) -> None:
		self._handlers[RoundResolved].append(handler)

	def on_advisory(self, handler: Callable[[str], None]) -> None:
		self._advisory_handlers.append(handler)

	# -- state --

	@property
	def connected(self) -> bool:
		return self._connected

	@property
	def subscriptions(self) -> frozenset[str]:
		return frozenset(self._subscriptions)

	def last_push_for(self, mission_id: str) -> float:
		return self._last_push_by_id.get(normalize_id(mission_id), 0.0)

	# -- lifecycle --

	async def start(self) -> bool:
		"""Connect and start reading. Returns False if the channel could not be established."""
		self._stopping = False
		try:
			await self._transport.connect()
		except PushDisconnected as exc:
			logger.warning("Push connect failed: %s", exc)
			if not await self._reconnect():
				return False
		else:
			self._connected = True
			await self._resubscribe()
		self._task = asyncio.get_running_loop().create_task(self._run())
		return True

	async def stop(self) -> None:
		self._stopping = True
		self._connected = False
		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None
		await self._transport.close()

	async def wait_closed(self) -> None:
		if self._task is not None:
			await self._task

	async def _run(self) -> None:
		while not self._stopping:
			try:
				async for message in self._transport.messages():
					event = parse_event(message)
					if event is not None:
						await self.dispatch(event)
				if self._stopping:
					return
				logger.warning("Push channel closed by transport")
			except PushDisconnected as exc:
				if self._stopping:
					return
				logger.warning("Push channel lost: %s", exc)
			self._connected = False
			if not await self._reconnect():
				return

	async def _reconnect(self) -> bool:
		attempts = self._config.max_reconnect_attempts
		for attempt in range(1, attempts + 1):
			delay = min(
				self._config.reconnect_max_delay_seconds,
				self._config.reconnect_base_delay_seconds * (2 ** (attempt - 1)),
			)
			await self._sleep(delay)
			if self._stopping:
				return False
			try:
				await self._transport.connect()
			except PushDisconnected as exc:
				logger.warning("Push reconnect attempt %d/%d failed: %s", attempt, attempts, exc)
				continue
			self._connected = True
			self.reconnects += 1
			logger.info("Push channel reconnected after %d attempt(s)", attempt)
			await self._resubscribe()
			return True

		self._advise(f"Live updates unavailable after {attempts} reconnect attempts")
		return False

	async def _resubscribe(self) -> None:
		for key in sorted(self._subscriptions):
			try:
				await self._transport.invoke(SUBSCRIBE, key)
			except PushDisconnected as exc:
				logger.error("Resubscribe to %s failed: %s", key, exc)

	def _advise(self, message: str) -> None:
		logger.warning("Push advisory: %s", message)
		for handler in self._advisory_handlers:
			try:
				handler(message)
			except Exception as exc:
				logger.error("Advisory handler failed: %s", exc)

	# -- subscriptions --

	async def join(self, mission_id: str) -> bool:
		key = normalize_id(mission_id)
		if not key:
			return False
		if key in self._subscriptions:
			return True
		# Kept even when the invoke below fails; _resubscribe replays it.
		self._subscriptions.add(key)
		if self._connected:
			try:
				await self._transport.invoke(SUBSCRIBE, key)
			except PushDisconnected as exc:
				logger.error("SubscribeMission %s failed, will retry on reconnect: %s", key, exc)
				return False
		return True

	async def leave(self, mission_id: str) -> None:
		key = normalize_id(mission_id)
		if key not in self._subscriptions:
			return
		self._subscriptions.discard(key)
		self._last_push_by_id.pop(key, None)
		if self._connected:
			try:
				await self._transport.invoke(UNSUBSCRIBE, key)
			except PushDisconnected as exc:
				logger.debug("UnsubscribeMission %s failed: %s", key, exc)

	async def leave_all(self) -> None:
		for key in sorted(self._subscriptions):
			await self.leave(key)

	# -- delivery --

	async def dispatch(self, event: PushEvent) -> None:
		now = self._clock()
		self.last_push_at = now
		self._last_push_by_id[event.mission_id] = now
		for handler in list(self._handlers[type(event)]):
			try:
				result = handler(event)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("Push handler for %s failed", type(event).__name__)
