"""
Pulseboard - FastAPI Status Server
Exposes the resilience core (rate limiter, health circuit, request queue)
to dashboards and operators.

Routes:
- GET  /health                       liveness + trust flag
- GET  /api/resilience/report        plain-text health report
- GET  /api/resilience/status        limiter metrics, snapshot, queue status
- GET  /api/resilience/history       recent persisted snapshots
- POST /api/resilience/reset-tokens  emergency bucket refill
- POST /api/resilience/check         run a monitoring cycle now
- WS   /ws                           circuit transition events
"""
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse

from config import HOST, PORT
from resilience.core import get_core, reset_core

# ──────────────────────────── Logging ────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-20s | %(levelname)-7s | %(message)s",
    datefmt="%H:%M:%S"
)
logger = logging.getLogger("pulseboard.server")

# ──────────────────────────── Globals ────────────────────────────
connected_clients: Set[WebSocket] = set()


async def broadcast(message: str):
    """Broadcast a message to all connected WebSocket clients."""
    disconnected = set()
    for ws in list(connected_clients):
        try:
            await ws.send_text(message)
        except Exception:
            disconnected.add(ws)
    connected_clients.difference_update(disconnected)


# ──────────────────────────── Lifecycle ────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("=" * 60)
    logger.info("  Pulseboard - Initializing")
    logger.info("=" * 60)

    core = get_core()
    core.monitor.set_broadcast(broadcast)
    await core.start()

    logger.info(f"  Pulseboard Online - http://{HOST}:{PORT}")
    logger.info("=" * 60)

    yield  # App is running

    logger.info("Pulseboard shutting down...")
    await core.stop()
    reset_core()


# ──────────────────────────── App ────────────────────────────
app = FastAPI(
    title="Pulseboard",
    description="Client-side resilience control plane",
    lifespan=lifespan
)


# ──────────────────────────── Routes ────────────────────────────
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    trustworthy = get_core().monitor.is_trustworthy()
    return {"status": "online" if trustworthy else "degraded", "trustworthy": trustworthy}


@app.get("/api/resilience/report", response_class=PlainTextResponse)
async def health_report():
    """Human-readable report of the latest monitoring snapshot."""
    return get_core().monitor.generate_health_report()


@app.get("/api/resilience/status")
async def resilience_status():
    """Limiter metrics, health snapshot and queue figures."""
    return {"status": "ok", "data": get_core().get_status()}


@app.get("/api/resilience/history")
async def snapshot_history(limit: int = 10):
    """Recently persisted monitoring snapshots, newest first."""
    store = get_core().snapshots
    if store is None:
        return {"status": "ok", "data": []}
    try:
        return {"status": "ok", "data": store.recent(limit)}
    except sqlite3.Error as e:
        logger.warning(f"Snapshot history unavailable: {e}")
        return {"status": "error", "error": str(e)}


@app.post("/api/resilience/reset-tokens")
async def reset_tokens():
    """Emergency refill of the rate-limit bucket."""
    limiter = get_core().limiter
    limiter.reset_tokens()
    return {"status": "ok", "data": limiter.get_metrics()}


@app.post("/api/resilience/check")
async def run_check():
    """Run one monitoring cycle immediately (skipped while the circuit cools down)."""
    snapshot = await get_core().monitor.run_cycle()
    if snapshot is None:
        return {"status": "skipped", "data": get_core().monitor.get_snapshot().to_json()}
    return {"status": "ok", "data": snapshot.to_json()}


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """Push circuit transition events to dashboards."""
    await ws.accept()
    connected_clients.add(ws)
    logger.info(f"Client connected. Total: {len(connected_clients)}")

    try:
        await ws.send_text(json.dumps({
            "type": "init",
            "data": get_core().monitor.get_status(),
        }))
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON received: {raw[:100]}")
                continue
            if not isinstance(msg, dict):
                logger.warning(f"Ignoring non-object message: {raw[:100]}")
                continue
            if msg.get("type") == "ping":
                await ws.send_text(json.dumps({"type": "pong", "data": {}}))
    except WebSocketDisconnect:
        pass
    finally:
        connected_clients.discard(ws)
        logger.info(f"Client disconnected. Total: {len(connected_clients)}")


# ──────────────────────────── Entry ────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=HOST,
        port=PORT,
        reload=True,
        reload_dirs=[".", "resilience", "upstream"],
        log_level="info"
    )
