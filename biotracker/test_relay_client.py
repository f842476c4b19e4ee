"""Tests for relay_client.py: backoff, transport fallback and local pairing view."""

import asyncio
import json

import httpx

from biotracker.models import DeviceRole, MessageType
from biotracker.relay_client import RelayClient, RetryPolicy, _ws_url, retry_with_backoff


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0.001)


class FakeSocket:
    """Just enough of a websockets connection: send, close, async iteration."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self._incoming.get()


# ── retry_with_backoff ──────────────────────────────────

def test_backoff_doubles_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("refused")
        return "ok"

    sleep = SleepRecorder()
    outcome = asyncio.run(retry_with_backoff(flaky, RetryPolicy(max_attempts=3), sleep=sleep))
    assert outcome.ok and outcome.value == "ok"
    assert outcome.attempts == 3
    assert sleep.delays == [0.5, 1.0]


def test_backoff_gives_up_without_raising():
    async def down():
        raise OSError("refused")

    sleep = SleepRecorder()
    outcome = asyncio.run(retry_with_backoff(down, RetryPolicy(max_attempts=4), sleep=sleep))
    assert not outcome.ok
    assert isinstance(outcome.error, OSError)
    assert outcome.attempts == 4
    assert sleep.delays == [0.5, 1.0, 2.0]


def test_backoff_delay_is_capped():
    policy = RetryPolicy(base_delay=0.5, max_delay=2.0)
    assert [policy.delay(i) for i in range(5)] == [0.5, 1.0, 2.0, 2.0, 2.0]


def test_ws_url():
    assert _ws_url("http://relay:3000") == "ws://relay:3000/ws"
    assert _ws_url("https://relay.example") == "wss://relay.example/ws"


# ── Transport selection ─────────────────────────────────

def test_websocket_connect_registers():
    async def scenario():
        sock = FakeSocket()

        async def ws_connect(url):
            assert url == "ws://relay:3000/ws"
            return sock

        client = RelayClient("http://relay:3000", DeviceRole.LAPTOP, ws_connect=ws_connect)
        result = await client.connect()
        await client.close()
        return result, sock

    result, sock = asyncio.run(scenario())
    assert result.ok and result.transport == "websocket" and result.attempts == 1
    assert sock.sent[0] == {"type": "register", "deviceType": "laptop"}
    assert sock.closed


def test_falls_back_to_polling_after_retries():
    requests = []

    def handler(request):
        requests.append((request.method, request.url.path, request.content))
        if request.url.path == "/v1/relay/connect":
            return httpx.Response(200, json={"endpointId": "abc", "transport": "polling"})
        if request.method == "GET":
            first = sum(1 for m, p, _ in requests if m == "GET") == 1
            batch = [{"type": "available_laptops", "laptops": ["L1"]}] if first else []
            return httpx.Response(200, json={"messages": batch})
        return httpx.Response(200, json={"status": "ok"})

    async def refuse(url):
        raise OSError("connection refused")

    async def scenario():
        sleep = SleepRecorder()
        http = httpx.AsyncClient(base_url="http://relay:3000", transport=httpx.MockTransport(handler))
        client = RelayClient("http://relay:3000", DeviceRole.MOBILE, ws_connect=refuse, http=http, sleep=sleep)
        result = await client.connect()
        await asyncio.sleep(0.05)
        peers = list(client.peers)

        assert await client.publish(MessageType.EYE_TRACKING_DATA, {"trackingData": {}}) is False
        await client._dispatch({"type": "pair_confirmed", "sourceId": "L1"})
        assert await client.publish(MessageType.EYE_TRACKING_DATA, {"trackingData": {}}) is True

        await client.close()
        return result, peers, sleep.delays

    result, peers, delays = asyncio.run(scenario())
    assert result.ok and result.transport == "polling"
    assert result.attempts == 3
    assert delays[:2] == [0.5, 1.0]
    assert peers == ["L1"]

    connect_body = json.loads(requests[0][2])
    assert connect_body == {"deviceType": "mobile"}
    posted = [json.loads(body) for m, p, body in requests if m == "POST" and p == "/v1/relay/abc/messages"]
    assert posted == [{"type": "eye_tracking_data", "targetId": "L1", "trackingData": {}}]
    assert ("DELETE", "/v1/relay/abc") in [(m, p) for m, p, _ in requests]


def test_connect_fails_when_both_transports_do():
    def handler(request):
        return httpx.Response(503)

    async def refuse(url):
        raise OSError("connection refused")

    async def scenario():
        http = httpx.AsyncClient(base_url="http://relay:3000", transport=httpx.MockTransport(handler))
        client = RelayClient(ws_connect=refuse, http=http, sleep=SleepRecorder())
        result = await client.connect()
        await client.close()
        return result

    result = asyncio.run(scenario())
    assert not result.ok
    assert result.transport is None
    assert result.error


# ── Local pairing view ──────────────────────────────────

def test_dispatch_tracks_peers_and_partner():
    seen = []

    async def scenario():
        client = RelayClient(on_message=seen.append)
        await client._dispatch({"type": "available_laptops", "laptops": ["L1"]})
        await client._dispatch({"type": "laptop_connected", "laptopId": "L2"})
        await client._dispatch({"type": "pair_request", "sourceId": "L2"})
        await client._dispatch({"type": "pair_request", "sourceId": "L2"})
        assert client.peers == ["L1", "L2"]
        assert client.pending_requests == ["L2"]

        await client._dispatch({"type": "pair_confirmed", "sourceId": "L2"})
        assert client.paired_with == "L2"
        await client._dispatch({"type": "pair_revoked", "sourceId": "L1"})
        assert client.paired_with == "L2"

        await client._dispatch({"type": "laptop_disconnected", "laptopId": "L2"})
        assert client.peers == ["L1"]
        assert client.pending_requests == []
        assert client.paired_with is None

    asyncio.run(scenario())
    assert len(seen) == 7


def test_auto_accept_answers_pair_requests():
    async def scenario():
        sock = FakeSocket()

        async def ws_connect(url):
            return sock

        async def on_message(message):
            on_message.calls += 1

        on_message.calls = 0
        client = RelayClient(role=DeviceRole.LAPTOP, auto_accept=True, on_message=on_message, ws_connect=ws_connect)
        await client.connect()
        await client._dispatch({"type": "pair_request", "sourceId": "M1"})
        await client.close()
        return sock, client, on_message.calls

    sock, client, calls = asyncio.run(scenario())
    assert sock.sent[-1] == {"type": "pair_accept", "targetId": "M1"}
    assert client.pending_requests == []
    assert calls == 1


def test_feedback_goes_to_the_partner_only_when_paired():
    async def scenario():
        sock = FakeSocket()

        async def ws_connect(url):
            return sock

        client = RelayClient(role=DeviceRole.LAPTOP, ws_connect=ws_connect)
        await client.connect()
        unpaired = await client.send_feedback("alert", "breathe")
        await client._dispatch({"type": "pair_confirmed", "sourceId": "M1"})
        paired = await client.send_feedback("info", "ok", timestamp=5.0)
        await client.close()
        return sock, unpaired, paired

    sock, unpaired, paired = asyncio.run(scenario())
    assert unpaired is False and paired is True
    assert sock.sent[-1] == {
        "type": "biofeedback",
        "targetId": "M1",
        "feedback": {"type": "info", "message": "ok", "timestamp": 5.0},
    }
