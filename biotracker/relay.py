"""
BioTracker — Pairing & relay protocol engine.
=============================================
One in-memory registry of endpoints, shared by every transport. A mobile
(camera, data source) and a laptop (display, data sink) register, pair, and
from then on the mobile's biometric envelopes are sanitised and forwarded to
its paired laptop, and the laptop's biofeedback back to the mobile.

Endpoint lifecycle:

    connect → Registered(role) → Paired ⇄ Unpaired → disconnect

Rules:
  • a ``pair_accept`` only counts if it answers a pending ``pair_request``
    from that endpoint; stray accepts are dropped
  • at most one active link per endpoint; accepting a new pairing revokes
    the old link and tells the displaced peer (``pair_revoked``)
  • data is forwarded only along an active link; anything else is dropped
    silently (logged at debug), never queued
  • disconnect is idempotent; the former peer is unpaired and learns about it
    from the ``*_disconnected`` presence broadcast

All registry mutations run under one ``asyncio.Lock``. Outgoing messages are
collected while the lock is held and delivered after it is released, so a
slow socket never stalls the registry.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple, Type

from pydantic import BaseModel, ValidationError

from biotracker.config import OUTBOX_LIMIT
from biotracker.models import (
    BiofeedbackMsg,
    CombinedBiometricDataMsg,
    DeviceRole,
    EmotionDataMsg,
    EyeTrackingDataMsg,
    HeartRateDataMsg,
    MessageType,
    PairAcceptMsg,
    PairRequestMsg,
    RegisterMsg,
    parse_inbound,
)
from biotracker.sanitize import (
    sanitize_combined,
    sanitize_emotions,
    sanitize_feedback,
    sanitize_heart_rate,
    sanitize_tracking,
)

logger = logging.getLogger(__name__)

Message = Dict[str, Any]


# ─── Transports ───────────────────────────────────────────────────────────────

class Transport(Protocol):
    name: str

    async def send(self, message: Message) -> None:
        ...


class WebSocketTransport:
    """Primary transport: a FastAPI/Starlette WebSocket."""

    name = "websocket"

    def __init__(self, ws: Any):
        self._ws = ws

    async def send(self, message: Message) -> None:
        await self._ws.send_json(message)


class PollingTransport:
    """Fallback transport: messages wait in a bounded outbox until polled."""

    name = "polling"

    def __init__(self, limit: int = OUTBOX_LIMIT):
        self._outbox: Deque[Message] = deque(maxlen=limit)
        self.last_seen = time.monotonic()

    async def send(self, message: Message) -> None:
        self._outbox.append(message)

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def drain(self) -> List[Message]:
        self.touch()
        messages = list(self._outbox)
        self._outbox.clear()
        return messages

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_seen


# ─── Registry records ─────────────────────────────────────────────────────────

@dataclass
class Endpoint:
    id: str
    transport: Transport
    role: Optional[DeviceRole] = None
    peer_id: Optional[str] = None


# inbound data envelope → (outbound type, required target role, payload builder)
_DATA_ROUTES: Dict[Type[BaseModel], Tuple[MessageType, DeviceRole, Callable[[Any], Message]]] = {
    EyeTrackingDataMsg: (
        MessageType.EYE_TRACKING_UPDATE,
        DeviceRole.LAPTOP,
        lambda m: {"data": sanitize_tracking(m.tracking_data).to_wire()},
    ),
    HeartRateDataMsg: (
        MessageType.HEART_RATE_UPDATE,
        DeviceRole.LAPTOP,
        lambda m: {"data": sanitize_heart_rate(m.heart_rate_data).to_wire()},
    ),
    EmotionDataMsg: (
        MessageType.EMOTION_UPDATE,
        DeviceRole.LAPTOP,
        lambda m: {"data": sanitize_emotions(m.emotion_data).to_wire()},
    ),
    CombinedBiometricDataMsg: (
        MessageType.COMBINED_BIOMETRIC_UPDATE,
        DeviceRole.LAPTOP,
        lambda m: {"data": sanitize_combined(m.data).to_wire()},
    ),
    BiofeedbackMsg: (
        MessageType.BIOFEEDBACK_UPDATE,
        DeviceRole.MOBILE,
        lambda m: {"feedback": sanitize_feedback(m.feedback).to_wire()},
    ),
}

_ROSTER = {
    DeviceRole.MOBILE: (MessageType.AVAILABLE_LAPTOPS, "laptops"),
    DeviceRole.LAPTOP: (MessageType.AVAILABLE_MOBILES, "mobiles"),
}
_PRESENCE = {
    DeviceRole.MOBILE: (MessageType.MOBILE_CONNECTED, MessageType.MOBILE_DISCONNECTED, "mobileId"),
    DeviceRole.LAPTOP: (MessageType.LAPTOP_CONNECTED, MessageType.LAPTOP_DISCONNECTED, "laptopId"),
}


def _describe_error(raw: Any, exc: ValidationError) -> str:
    if not isinstance(raw, dict):
        return "message must be a JSON object"
    first = exc.errors()[0] if exc.errors() else {}
    kind = first.get("type")
    if kind == "union_tag_invalid":
        return f"unknown message type {raw.get('type')!r}"
    if kind == "union_tag_not_found":
        return "missing message type"
    loc = ".".join(str(p) for p in first.get("loc", ())[1:])
    return f"invalid {raw.get('type')} message: {loc or 'body'}: {first.get('msg', 'invalid')}"


# ─── Engine ───────────────────────────────────────────────────────────────────

class RelayEngine:
    """Transport-agnostic pairing registry and message router."""

    def __init__(self):
        self._endpoints: Dict[str, Endpoint] = {}
        self._buckets: Dict[DeviceRole, Dict[str, Endpoint]] = {
            DeviceRole.MOBILE: {},
            DeviceRole.LAPTOP: {},
        }
        # (requester, target) pairs awaiting a pair_accept
        self._requests: Set[Tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    # ── Queries ─────────────────────────────────────────

    def get(self, endpoint_id: str) -> Optional[Endpoint]:
        return self._endpoints.get(endpoint_id)

    def roster(self, role: DeviceRole) -> List[str]:
        return list(self._buckets[role])

    def peer_of(self, endpoint_id: str) -> Optional[str]:
        ep = self._endpoints.get(endpoint_id)
        return ep.peer_id if ep else None

    def stats(self) -> Dict[str, int]:
        links = sum(1 for ep in self._endpoints.values() if ep.peer_id) // 2
        return {
            "endpoints": len(self._endpoints),
            "mobiles": len(self._buckets[DeviceRole.MOBILE]),
            "laptops": len(self._buckets[DeviceRole.LAPTOP]),
            "pairs": links,
        }

    # ── Lifecycle ───────────────────────────────────────

    async def connect(self, transport: Transport, endpoint_id: Optional[str] = None) -> str:
        endpoint_id = endpoint_id or uuid.uuid4().hex[:12]
        async with self._lock:
            self._endpoints[endpoint_id] = Endpoint(id=endpoint_id, transport=transport)
        logger.info(f"[relay] Connected {endpoint_id} via {transport.name}")
        return endpoint_id

    async def register(self, endpoint_id: str, role: DeviceRole) -> bool:
        out: List[Tuple[Transport, Message]] = []
        async with self._lock:
            ep = self._endpoints.get(endpoint_id)
            if ep is None:
                return False
            if ep.role is not None and ep.role != role:
                self._unlink(ep, out)
                self._forget_requests(ep.id)
                self._buckets[ep.role].pop(ep.id, None)
                _, disconnected, id_key = _PRESENCE[ep.role]
                for other in self._buckets[ep.role.opposite].values():
                    out.append((other.transport, {"type": disconnected.value, id_key: ep.id}))
            first_time = ep.role != role
            ep.role = role
            self._buckets[role][ep.id] = ep

            roster_type, roster_key = _ROSTER[role]
            out.append((ep.transport, {
                "type": roster_type.value,
                roster_key: self.roster(role.opposite),
            }))
            if first_time:
                connected, _, id_key = _PRESENCE[role]
                for other in self._buckets[role.opposite].values():
                    out.append((other.transport, {"type": connected.value, id_key: ep.id}))
        logger.info(f"[relay] {endpoint_id} registered as {role.value}")
        await self._deliver(out)
        return True

    async def disconnect(self, endpoint_id: str) -> bool:
        """Remove an endpoint. Returns False if it was already gone."""
        out: List[Tuple[Transport, Message]] = []
        async with self._lock:
            ep = self._endpoints.pop(endpoint_id, None)
            if ep is None:
                return False
            if ep.peer_id:
                peer = self._endpoints.get(ep.peer_id)
                if peer is not None and peer.peer_id == ep.id:
                    peer.peer_id = None
                ep.peer_id = None
            self._forget_requests(ep.id)
            if ep.role is not None:
                self._buckets[ep.role].pop(ep.id, None)
                _, disconnected, id_key = _PRESENCE[ep.role]
                for other in self._buckets[ep.role.opposite].values():
                    out.append((other.transport, {"type": disconnected.value, id_key: ep.id}))
        logger.info(f"[relay] Disconnected {endpoint_id}")
        await self._deliver(out)
        return True

    async def reap_idle(self, max_idle_sec: float) -> List[str]:
        """Disconnect polling endpoints that have not polled for ``max_idle_sec``."""
        now = time.monotonic()
        stale = [
            ep.id
            for ep in list(self._endpoints.values())
            if isinstance(ep.transport, PollingTransport) and ep.transport.idle_for(now) > max_idle_sec
        ]
        for endpoint_id in stale:
            logger.info(f"[relay] Reaping idle polling endpoint {endpoint_id}")
            await self.disconnect(endpoint_id)
        return stale

    # ── Pairing ─────────────────────────────────────────

    async def request_pairing(self, source_id: str, target_id: str) -> bool:
        out: List[Tuple[Transport, Message]] = []
        async with self._lock:
            src = self._endpoints.get(source_id)
            target = self._endpoints.get(target_id)
            if src is None or src.role is None or target is None or target.role is None or src is target:
                logger.debug(f"[relay] Dropping pair_request {source_id} → {target_id}")
                return False
            self._requests.add((source_id, target_id))
            out.append((target.transport, {
                "type": MessageType.PAIR_REQUEST.value,
                "sourceId": source_id,
            }))
        await self._deliver(out)
        return True

    async def accept_pairing(self, accepter_id: str, requester_id: str) -> bool:
        out: List[Tuple[Transport, Message]] = []
        async with self._lock:
            a = self._endpoints.get(accepter_id)
            b = self._endpoints.get(requester_id)
            if (
                a is None or b is None or a is b
                or a.role is None or b.role is None or a.role == b.role
            ):
                logger.debug(f"[relay] Dropping pair_accept {accepter_id} → {requester_id}")
                return False
            if (requester_id, accepter_id) not in self._requests:
                logger.debug(f"[relay] Dropping pair_accept {accepter_id} → {requester_id}: no pending request")
                return False
            self._requests.discard((requester_id, accepter_id))
            for ep, other in ((a, b), (b, a)):
                if ep.peer_id is not None and ep.peer_id != other.id:
                    self._unlink(ep, out)
            a.peer_id = b.id
            b.peer_id = a.id
            out.append((a.transport, {"type": MessageType.PAIR_CONFIRMED.value, "sourceId": b.id}))
            out.append((b.transport, {"type": MessageType.PAIR_CONFIRMED.value, "sourceId": a.id}))
        logger.info(f"[relay] Paired {accepter_id} ⇄ {requester_id}")
        await self._deliver(out)
        return True

    def _unlink(self, ep: Endpoint, out: List[Tuple[Transport, Message]]) -> None:
        """Tear down ``ep``'s link and tell the displaced peer. Lock must be held."""
        peer = self._endpoints.get(ep.peer_id) if ep.peer_id else None
        ep.peer_id = None
        if peer is not None and peer.peer_id == ep.id:
            peer.peer_id = None
            out.append((peer.transport, {"type": MessageType.PAIR_REVOKED.value, "sourceId": ep.id}))
            logger.info(f"[relay] Link {ep.id} ⇄ {peer.id} revoked")

    def _forget_requests(self, endpoint_id: str) -> None:
        """Drop pending requests to or from ``endpoint_id``. Lock must be held."""
        self._requests = {r for r in self._requests if endpoint_id not in r}

    # ── Routing ─────────────────────────────────────────

    async def route(
        self,
        sender_id: str,
        target_id: str,
        message_type: MessageType,
        body: Message,
        target_role: Optional[DeviceRole] = None,
    ) -> bool:
        """Forward along an active link only. Returns whether it was delivered."""
        async with self._lock:
            sender = self._endpoints.get(sender_id)
            target = self._endpoints.get(target_id)
            if (
                sender is None or target is None
                or sender.peer_id != target_id or target.peer_id != sender_id
                or (target_role is not None and target.role != target_role)
            ):
                logger.debug(f"[relay] Dropping {message_type.value} {sender_id} → {target_id}: not paired")
                return False
            transport = target.transport
        message = {"type": message_type.value, "sourceId": sender_id}
        message.update(body)
        return await self._deliver([(transport, message)]) == 1

    async def reject(self, endpoint_id: str, reason: str) -> None:
        ep = self._endpoints.get(endpoint_id)
        if ep is None:
            return
        await self._deliver([(ep.transport, {"type": MessageType.ERROR.value, "message": reason})])

    # ── Dispatch ────────────────────────────────────────

    async def handle(self, endpoint_id: str, raw: Any) -> None:
        """Validate one inbound envelope and act on it. Never raises on bad input."""
        try:
            msg = parse_inbound(raw)
        except ValidationError as exc:
            reason = _describe_error(raw, exc)
            logger.warning(f"[relay] {endpoint_id}: {reason}")
            await self.reject(endpoint_id, reason)
            return

        if isinstance(msg, RegisterMsg):
            await self.register(endpoint_id, msg.device_type)
        elif isinstance(msg, PairRequestMsg):
            await self.request_pairing(endpoint_id, msg.target_id)
        elif isinstance(msg, PairAcceptMsg):
            await self.accept_pairing(endpoint_id, msg.target_id)
        elif type(msg) in _DATA_ROUTES:
            out_type, target_role, build = _DATA_ROUTES[type(msg)]
            await self.route(endpoint_id, msg.target_id, out_type, build(msg), target_role)
        else:
            raise TypeError(f"unhandled inbound message {type(msg).__name__}")

    # ── Delivery ────────────────────────────────────────

    async def _deliver(self, out: List[Tuple[Transport, Message]]) -> int:
        sent = 0
        for transport, message in out:
            try:
                await transport.send(message)
                sent += 1
            except Exception as exc:
                logger.warning(f"[relay] Send of {message.get('type')} failed: {exc}")
        return sent
