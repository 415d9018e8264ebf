"""Tests for push event parsing, dispatch and reconnect replay."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from conftest import settle

from mission_sync.config import PushConfig
from mission_sync.models import MissionStatus
from mission_sync.push import (
	SUBSCRIBE,
	UNSUBSCRIBE,
	MemoryPushTransport,
	MissionUpdated,
	PushDisconnected,
	PushDispatcher,
	RoundResolved,
	SsePushTransport,
	StatusChanged,
	parse_event,
)


class FakeSleep:
	def __init__(self) -> None:
		self.delays: list[float] = []

	async def __call__(self, delay: float) -> None:
		self.delays.append(delay)


def _dispatcher(transport: MemoryPushTransport, **config: Any) -> tuple[PushDispatcher, FakeSleep]:
	sleep = FakeSleep()
	dispatcher = PushDispatcher(transport, PushConfig(**config), clock=lambda: 1234.0, sleep=sleep)
	return dispatcher, sleep


class TestParseEvent:
	def test_status_changed(self) -> None:
		event = parse_event({"target": "StatusChanged", "arguments": ["0xABC", 4]})
		assert event == StatusChanged(mission_id="0xabc", new_status=MissionStatus.PAUSED)

	def test_mission_updated(self) -> None:
		assert parse_event({"target": "MissionUpdated", "arguments": ["0xabc"]}) == MissionUpdated("0xabc")
		event = parse_event({"target": "MissionUpdated", "arguments": ["0xabc", "enrolled"]})
		assert event == MissionUpdated("0xabc", reason="enrolled")

	def test_round_result(self) -> None:
		event = parse_event({"target": "RoundResult", "arguments": ["0xabc", 2, "0xP1", "250000000000000000000"]})
		assert isinstance(event, RoundResolved)
		assert event.recipient == "0xp1"
		assert event.amount == 250000000000000000000

	@pytest.mark.parametrize(
		"message",
		[
			{"target": "RoundResult", "arguments": ["0xabc", 2, "0xP1", 1.5]},
			{"target": "StatusChanged", "arguments": ["0xabc", 9]},
			{"target": "StatusChanged", "arguments": ["0xabc"]},
			{"target": "Unknown", "arguments": ["0xabc"]},
			{"arguments": ["0xabc"]},
			"not a message",
		],
	)
	def test_rejected(self, message: object) -> None:
		assert parse_event(message) is None


class TestDispatch:
	@pytest.mark.asyncio
	async def test_routes_by_event_type(self) -> None:
		dispatcher, _ = _dispatcher(MemoryPushTransport())
		updated: list[MissionUpdated] = []
		changed: list[StatusChanged] = []

		async def on_changed(event: StatusChanged) -> None:
			changed.append(event)

		dispatcher.on_updated(updated.append)
		dispatcher.on_status_changed(on_changed)
		await dispatcher.dispatch(MissionUpdated("0xabc"))
		await dispatcher.dispatch(StatusChanged("0xabc", MissionStatus.ACTIVE))

		assert updated == [MissionUpdated("0xabc")]
		assert changed == [StatusChanged("0xabc", MissionStatus.ACTIVE)]
		assert dispatcher.last_push_for("0xABC") == 1234.0
		assert dispatcher.last_push_at == 1234.0

	@pytest.mark.asyncio
	async def test_failing_handler_does_not_block_others(self) -> None:
		dispatcher, _ = _dispatcher(MemoryPushTransport())
		seen: list[RoundResolved] = []

		def broken(event: RoundResolved) -> None:
			raise RuntimeError("boom")

		dispatcher.on_round_resolved(broken)
		dispatcher.on_round_resolved(seen.append)
		event = RoundResolved("0xabc", 1, "0xp1", 10)
		await dispatcher.dispatch(event)
		assert seen == [event]


class TestSubscriptions:
	@pytest.mark.asyncio
	async def test_join_and_leave(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, _ = _dispatcher(transport)
		assert await dispatcher.start()
		assert await dispatcher.join("0xABC")
		assert await dispatcher.join("0xabc")
		assert transport.invocations == [(SUBSCRIBE, "0xabc")]
		assert dispatcher.subscriptions == frozenset({"0xabc"})

		await dispatcher.leave("0xabc")
		assert transport.invocations[-1] == (UNSUBSCRIBE, "0xabc")
		assert dispatcher.subscriptions == frozenset()
		await dispatcher.stop()

	@pytest.mark.asyncio
	async def test_join_before_connect_is_replayed(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, _ = _dispatcher(transport)
		await dispatcher.join("0xb")
		await dispatcher.join("0xa")
		assert transport.invocations == []

		await dispatcher.start()
		assert transport.invocations == [(SUBSCRIBE, "0xa"), (SUBSCRIBE, "0xb")]
		await dispatcher.stop()

	@pytest.mark.asyncio
	async def test_published_events_reach_handlers(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, _ = _dispatcher(transport)
		received: list[StatusChanged] = []
		dispatcher.on_status_changed(received.append)
		await dispatcher.start()
		await dispatcher.join("0xabc")

		assert transport.publish("StatusChanged", "0xabc", 3)
		assert not transport.publish("StatusChanged", "0xother", 3)
		await settle()
		assert received == [StatusChanged("0xabc", MissionStatus.ACTIVE)]
		await dispatcher.stop()
		assert not dispatcher.connected
		assert not transport.connected

	@pytest.mark.asyncio
	async def test_leave_all(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, _ = _dispatcher(transport)
		await dispatcher.start()
		await dispatcher.join("0xa")
		await dispatcher.join("0xb")
		await dispatcher.leave_all()
		assert transport.subscribed == set()
		await dispatcher.stop()


class TestReconnect:
	@pytest.mark.asyncio
	async def test_drop_replays_subscriptions(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, sleep = _dispatcher(transport)
		received: list[MissionUpdated] = []
		dispatcher.on_updated(received.append)
		await dispatcher.start()
		await dispatcher.join("0xb")
		await dispatcher.join("0xa")

		transport.fail_connects = 1
		transport.drop()
		await settle()

		assert transport.subscribed == {"0xa", "0xb"}
		assert sleep.delays == [1.0, 2.0]
		assert dispatcher.reconnects == 1
		assert dispatcher.connected

		transport.publish("MissionUpdated", "0xa")
		await settle()
		assert received == [MissionUpdated("0xa")]
		await dispatcher.stop()

	@pytest.mark.asyncio
	async def test_failed_subscribe_replayed_after_reconnect(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, _ = _dispatcher(transport)
		await dispatcher.start()

		transport.connected = False
		assert not await dispatcher.join("0xABC")
		assert dispatcher.subscriptions == frozenset({"0xabc"})
		assert transport.subscribed == set()

		transport.drop()
		await settle()
		assert dispatcher.connected
		assert transport.subscribed == {"0xabc"}
		await dispatcher.stop()

	@pytest.mark.asyncio
	async def test_gives_up_with_advisory(self) -> None:
		transport = MemoryPushTransport()
		dispatcher, sleep = _dispatcher(
			transport,
			max_reconnect_attempts=4,
			reconnect_base_delay_seconds=1.0,
			reconnect_max_delay_seconds=4.0,
		)
		advisories: list[str] = []
		dispatcher.on_advisory(advisories.append)
		await dispatcher.start()

		transport.fail_connects = 10
		transport.drop()
		await dispatcher.wait_closed()

		assert sleep.delays == [1.0, 2.0, 4.0, 4.0]
		assert len(advisories) == 1
		assert "4 reconnect attempts" in advisories[0]
		assert not dispatcher.connected

	@pytest.mark.asyncio
	async def test_start_fails_when_unreachable(self) -> None:
		transport = MemoryPushTransport()
		transport.fail_connects = 5
		dispatcher, _ = _dispatcher(transport, max_reconnect_attempts=2)
		advisories: list[str] = []
		dispatcher.on_advisory(advisories.append)
		assert not await dispatcher.start()
		assert transport.connect_calls == 3
		assert advisories


class TestSseTransport:
	@pytest.mark.asyncio
	async def test_stream_and_subscribe(self) -> None:
		posted: list[dict[str, str]] = []
		body = (
			b'data: {"target": "MissionUpdated", "arguments": ["0xabc"]}\n\n'
			b"data: not json\n\n"
		)

		def handler(request: httpx.Request) -> httpx.Response:
			if request.method == "GET":
				return httpx.Response(200, headers={"x-connection-id": "c-1"}, content=body)
			posted.append(json.loads(request.content))
			return httpx.Response(204)

		async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
			transport = SsePushTransport("http://hub/stream", "http://hub/subscribe", client=client)
			await transport.connect()
			await transport.invoke(SUBSCRIBE, "0xabc")
			assert posted == [{"method": SUBSCRIBE, "mission": "0xabc", "connectionId": "c-1"}]

			received = []
			with pytest.raises(PushDisconnected, match="ended"):
				async for message in transport.messages():
					received.append(message)
			assert received == [{"target": "MissionUpdated", "arguments": ["0xabc"]}]
			await transport.close()

	@pytest.mark.asyncio
	async def test_connect_error(self) -> None:
		def handler(request: httpx.Request) -> httpx.Response:
			return httpx.Response(503)

		async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
			transport = SsePushTransport("http://hub/stream", client=client)
			with pytest.raises(PushDisconnected):
				await transport.connect()
			with pytest.raises(PushDisconnected, match="no subscribe endpoint"):
				await transport.invoke(SUBSCRIBE, "0xabc")
