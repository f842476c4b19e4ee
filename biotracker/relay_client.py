"""
Relay client — connects a device to the BioTracker relay.

Tries the WebSocket transport first with bounded retries and exponential
backoff (0.5 s, 1 s, 2 s, ...). If every attempt fails it falls back to the
HTTP polling transport; both speak the same envelopes. Incoming presence and
pairing messages keep a small local view (available peers, current partner)
and are then handed to an optional ``on_message`` callback.

Usage:
    client = RelayClient("http://localhost:3000", DeviceRole.MOBILE)
    result = await client.connect()
    await client.request_pairing(laptop_id)
    await client.publish(MessageType.HEART_RATE_DATA, {"heartRateData": {...}})
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from biotracker.config import (
    POLL_INTERVAL_SEC,
    RELAY_URL,
    WS_BACKOFF_BASE_SEC,
    WS_BACKOFF_MAX_SEC,
    WS_MAX_ATTEMPTS,
)
from biotracker.models import DeviceRole, MessageType

logger = logging.getLogger(__name__)

Message = Dict[str, Any]


# ─── Retry ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = WS_MAX_ATTEMPTS
    base_delay: float = WS_BACKOFF_BASE_SEC
    max_delay: float = WS_BACKOFF_MAX_SEC

    def delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (0-based)."""
        return min(self.max_delay, self.base_delay * (2 ** attempt))


@dataclass(frozen=True)
class RetryOutcome:
    value: Any
    attempts: int
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def retry_with_backoff(
    op: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    retry_on: tuple = (Exception,),
) -> RetryOutcome:
    """Run ``op`` until it succeeds or the policy is exhausted. Never raises ``retry_on``."""
    last_exc: Optional[BaseException] = None
    for attempt in range(policy.max_attempts):
        try:
            return RetryOutcome(value=await op(), attempts=attempt + 1)
        except retry_on as exc:
            last_exc = exc
            logger.warning(f"[relay_client] {label} attempt {attempt + 1}/{policy.max_attempts} failed: {exc}")
            if attempt + 1 < policy.max_attempts:
                await sleep(policy.delay(attempt))
    logger.error(f"[relay_client] {label}: all retries exhausted: {last_exc}")
    return RetryOutcome(value=None, attempts=policy.max_attempts, error=last_exc)


@dataclass(frozen=True)
class ConnectResult:
    ok: bool
    transport: Optional[str]
    attempts: int
    error: Optional[str] = None


# ─── Client ───────────────────────────────────────────────────────────────────

def _ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):] + "/ws"
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):] + "/ws"
    return base_url + "/ws"


class RelayClient:
    """One device's connection to the relay."""

    def __init__(
        self,
        base_url: str = RELAY_URL,
        role: DeviceRole = DeviceRole.MOBILE,
        on_message: Optional[Callable[[Message], Any]] = None,
        policy: RetryPolicy = RetryPolicy(),
        poll_interval: float = POLL_INTERVAL_SEC,
        auto_accept: bool = False,
        ws_connect: Callable[..., Awaitable[Any]] = websockets.connect,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.role = role
        self.policy = policy
        self.poll_interval = poll_interval
        self.auto_accept = auto_accept
        self._on_message = on_message
        self._ws_connect = ws_connect
        self._http = http
        self._sleep = sleep

        self.transport: Optional[str] = None
        self.endpoint_id: Optional[str] = None      # known on the polling transport only
        self.peers: List[str] = []
        self.paired_with: Optional[str] = None
        self.pending_requests: List[str] = []

        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    # ── Connect / close ─────────────────────────────────

    async def connect(self) -> ConnectResult:
        self._closing = False
        ws_url = _ws_url(self.base_url)
        outcome = await retry_with_backoff(
            lambda: self._ws_connect(ws_url),
            self.policy,
            label="websocket connect",
            sleep=self._sleep,
            retry_on=(OSError, WebSocketException, asyncio.TimeoutError),
        )
        if outcome.ok:
            self._ws = outcome.value
            self.transport = "websocket"
            await self.send({"type": MessageType.REGISTER.value, "deviceType": self.role.value})
            self._reader = asyncio.create_task(self._read_socket())
            logger.info(f"[relay_client] Connected via websocket as {self.role.value}")
            return ConnectResult(ok=True, transport=self.transport, attempts=outcome.attempts)

        logger.warning("[relay_client] WebSocket unavailable, falling back to HTTP polling")
        try:
            resp = await self._get_http().post(
                "/v1/relay/connect", json={"deviceType": self.role.value}
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(f"[relay_client] Polling connect failed: {exc}")
            self.transport = None
            return ConnectResult(ok=False, transport=None, attempts=outcome.attempts, error=str(exc))

        self.endpoint_id = resp.json()["endpointId"]
        self.transport = "polling"
        self._reader = asyncio.create_task(self._poll())
        logger.info(f"[relay_client] Connected via polling as {self.role.value} ({self.endpoint_id})")
        return ConnectResult(ok=True, transport=self.transport, attempts=outcome.attempts)

    async def close(self) -> None:
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self.transport == "polling" and self.endpoint_id:
            try:
                await self._get_http().delete(f"/v1/relay/{self.endpoint_id}")
            except httpx.HTTPError as exc:
                logger.warning(f"[relay_client] Polling disconnect failed: {exc}")
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        self.transport = None
        self.paired_with = None

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=10.0)
        return self._http

    # ── Sending ─────────────────────────────────────────

    async def send(self, message: Message) -> bool:
        try:
            if self.transport == "websocket" and self._ws is not None:
                await self._ws.send(json.dumps(message))
                return True
            if self.transport == "polling" and self.endpoint_id:
                resp = await self._get_http().post(f"/v1/relay/{self.endpoint_id}/messages", json=message)
                resp.raise_for_status()
                return True
        except (ConnectionClosed, httpx.HTTPError) as exc:
            logger.warning(f"[relay_client] Send of {message.get('type')} failed: {exc}")
            return False
        logger.debug(f"[relay_client] Not connected, dropping {message.get('type')}")
        return False

    async def publish(self, message_type: MessageType, body: Message) -> bool:
        """Send a data envelope to the current partner. False when unpaired."""
        if self.paired_with is None:
            return False
        message = {"type": message_type.value, "targetId": self.paired_with}
        message.update(body)
        return await self.send(message)

    async def request_pairing(self, target_id: str) -> bool:
        return await self.send({"type": MessageType.PAIR_REQUEST.value, "targetId": target_id})

    async def accept_pairing(self, requester_id: str) -> bool:
        if requester_id in self.pending_requests:
            self.pending_requests.remove(requester_id)
        return await self.send({"type": MessageType.PAIR_ACCEPT.value, "targetId": requester_id})

    async def send_feedback(self, kind: str, message: str, timestamp: Optional[float] = None) -> bool:
        feedback = {"type": kind, "message": message}
        if timestamp is not None:
            feedback["timestamp"] = timestamp
        return await self.publish(MessageType.BIOFEEDBACK, {"feedback": feedback})

    # ── Receiving ───────────────────────────────────────

    async def _read_socket(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("[relay_client] Ignoring malformed message from relay")
                    continue
                await self._dispatch(message)
        except ConnectionClosed as exc:
            logger.warning(f"[relay_client] WebSocket closed: {exc}")
        if not self._closing:
            self._ws = None
            self.transport = None
            self.paired_with = None
            logger.info("[relay_client] Reconnecting")
            await self.connect()

    async def _poll(self) -> None:
        while True:
            try:
                resp = await self._get_http().get(f"/v1/relay/{self.endpoint_id}/messages")
                if resp.status_code == 404:
                    logger.error("[relay_client] Polling endpoint expired")
                    self.transport = None
                    self.paired_with = None
                    return
                resp.raise_for_status()
                for message in resp.json().get("messages", []):
                    await self._dispatch(message)
            except httpx.HTTPError as exc:
                logger.warning(f"[relay_client] Poll failed: {exc}")
            await self._sleep(self.poll_interval)

    async def _dispatch(self, message: Message) -> None:
        kind = message.get("type")
        source = message.get("sourceId")

        if kind in (MessageType.AVAILABLE_LAPTOPS.value, MessageType.AVAILABLE_MOBILES.value):
            self.peers = list(message.get("laptops") or message.get("mobiles") or [])
        elif kind in (MessageType.LAPTOP_CONNECTED.value, MessageType.MOBILE_CONNECTED.value):
            peer = message.get("laptopId") or message.get("mobileId")
            if peer and peer not in self.peers:
                self.peers.append(peer)
        elif kind in (MessageType.LAPTOP_DISCONNECTED.value, MessageType.MOBILE_DISCONNECTED.value):
            peer = message.get("laptopId") or message.get("mobileId")
            if peer in self.peers:
                self.peers.remove(peer)
            if peer in self.pending_requests:
                self.pending_requests.remove(peer)
            if peer is not None and peer == self.paired_with:
                self.paired_with = None
        elif kind == MessageType.PAIR_REQUEST.value and source:
            if self.auto_accept:
                await self.accept_pairing(source)
            elif source not in self.pending_requests:
                self.pending_requests.append(source)
        elif kind == MessageType.PAIR_CONFIRMED.value:
            self.paired_with = source
            logger.info(f"[relay_client] Paired with {source}")
        elif kind == MessageType.PAIR_REVOKED.value:
            if source == self.paired_with:
                self.paired_with = None
                logger.info(f"[relay_client] Pairing with {source} revoked")
        elif kind == MessageType.ERROR.value:
            logger.warning(f"[relay_client] Relay error: {message.get('message')}")

        if self._on_message is not None:
            result = self._on_message(message)
            if inspect.isawaitable(result):
                await result
