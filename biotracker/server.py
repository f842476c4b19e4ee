"""
BioTracker Relay — FastAPI server
=================================
WebSocket relay at ``/ws`` (primary) with an HTTP polling fallback under
``/v1/relay`` for clients that cannot hold a socket open. Both transports
share one in-memory ``RelayEngine`` and one message schema.

Run:
    python -m biotracker.server
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from biotracker.config import (
    LOG_LEVEL,
    POLL_IDLE_TIMEOUT_SEC,
    REAPER_INTERVAL_SEC,
    RELAY_HOST,
    RELAY_PORT,
)
from biotracker.models import DeviceRole
from biotracker.relay import PollingTransport, RelayEngine, WebSocketTransport

logger = logging.getLogger(__name__)

SERVICE_NAME = "BioTracker Relay"
VERSION = "1.0.0"


# ────────────────────────────────────────────────────────────
#   REQUEST / RESPONSE SCHEMAS
# ────────────────────────────────────────────────────────────

class ConnectReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_type: Optional[DeviceRole] = Field(None, alias="deviceType")


async def _reaper(engine: RelayEngine, interval: float, max_idle: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await engine.reap_idle(max_idle)


def create_app(
    engine: Optional[RelayEngine] = None,
    reap_interval: float = REAPER_INTERVAL_SEC,
    max_idle: float = POLL_IDLE_TIMEOUT_SEC,
) -> FastAPI:
    engine = engine or RelayEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(_reaper(engine, reap_interval, max_idle))
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title=SERVICE_NAME, version=VERSION, lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _polling(endpoint_id: str) -> PollingTransport:
        ep = engine.get(endpoint_id)
        if ep is None or not isinstance(ep.transport, PollingTransport):
            raise HTTPException(404, "Endpoint not found")
        return ep.transport

    # ────────────────────────────────────────────────────────
    #   WEBSOCKET: PRIMARY TRANSPORT
    # ────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def relay_socket(ws: WebSocket):
        await ws.accept()
        endpoint_id = await engine.connect(WebSocketTransport(ws))
        try:
            while True:
                text = await ws.receive_text()
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning(f"[server] {endpoint_id}: malformed JSON")
                    await engine.reject(endpoint_id, "malformed JSON")
                    continue
                await engine.handle(endpoint_id, data)
        except WebSocketDisconnect:
            pass
        finally:
            await engine.disconnect(endpoint_id)

    # ────────────────────────────────────────────────────────
    #   HTTP POLLING: FALLBACK TRANSPORT
    # ────────────────────────────────────────────────────────

    @app.post("/v1/relay/connect")
    async def polling_connect(body: Optional[ConnectReq] = None):
        """Open a polling endpoint (REST fallback when WebSocket is unavailable)."""
        endpoint_id = await engine.connect(PollingTransport())
        if body is not None and body.device_type is not None:
            await engine.register(endpoint_id, body.device_type)
        return {"endpointId": endpoint_id, "transport": PollingTransport.name}

    @app.post("/v1/relay/{endpoint_id}/messages")
    async def polling_send(endpoint_id: str, request: Request):
        transport = _polling(endpoint_id)
        transport.touch()
        try:
            data: Any = await request.json()
        except json.JSONDecodeError:
            logger.warning(f"[server] {endpoint_id}: malformed JSON")
            await engine.reject(endpoint_id, "malformed JSON")
            raise HTTPException(400, "Malformed JSON")
        await engine.handle(endpoint_id, data)
        return {"status": "ok"}

    @app.get("/v1/relay/{endpoint_id}/messages")
    async def polling_receive(endpoint_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return {"messages": _polling(endpoint_id).drain()}

    @app.delete("/v1/relay/{endpoint_id}")
    async def polling_disconnect(endpoint_id: str):
        _polling(endpoint_id)
        await engine.disconnect(endpoint_id)
        return {"status": "disconnected"}

    # ────────────────────────────────────────────────────────
    #   HEALTH CHECK
    # ────────────────────────────────────────────────────────

    @app.get("/")
    async def root():
        return {"service": SERVICE_NAME, "version": VERSION, **engine.stats()}

    return app


app = create_app()


# ── Run ──────────────────────────────────────────────────────
def main() -> None:
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT)


if __name__ == "__main__":
    main()
