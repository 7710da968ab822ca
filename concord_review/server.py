from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from concord_governance.config import load_config
from concord_governance.consensus import ConsensusEngine
from concord_governance.intent_cache import IntentCacheStore
from concord_governance.ledger import GovernanceAuditLedger
from concord_governance.logs import attach_file_handler
from concord_governance.registry import TrustRegistryStore
from concord_governance.stability import TrustStabilityMetric
from concord_governance.types import UnknownEscalationError

from .broadcaster import ReviewBroadcaster
from .models import EscalationView, IntentView, OutcomeResponse, TrustResponse, VerdictRequest, model_to_dict

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "trust_registry.json"
INTENT_CACHE_FILENAME = "intent_cache.json"
LEDGER_FILENAME = "governance_ledger.jsonl"


def create_app(
    *,
    engine: ConsensusEngine,
    broadcaster: Optional[ReviewBroadcaster] = None,
    on_change: Optional[Callable[[], None]] = None,
    expiry_poll_interval: float = 30.0,
) -> FastAPI:
    stream_bridge = broadcaster or ReviewBroadcaster(
        engine=engine,
        expiry_poll_interval=expiry_poll_interval,
        on_change=on_change,
    )
    stability = TrustStabilityMetric()

    @asynccontextmanager
    async def _lifespan(_: FastAPI):
        await stream_bridge.start()
        try:
            yield
        finally:
            await stream_bridge.stop()

    app = FastAPI(
        title="Concord Review Channel",
        description="Human verdicts for escalated proposals, plus read-only trust and intent views.",
        version="0.1.0",
        lifespan=_lifespan,
    )
    app.state.engine = engine
    app.state.broadcaster = stream_bridge

    @app.get("/api/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "pending_escalations": len(engine.pending_escalations()),
            "registry_version": engine.registry.version,
            "intent_cycle": engine.intent_cache.cycle,
        }

    @app.get("/api/escalations")
    async def list_escalations() -> dict:
        items = [EscalationView.from_pending(pending) for pending in engine.pending_escalations()]
        return {"items": [model_to_dict(item) for item in items], "count": len(items)}

    @app.get("/api/escalations/{proposal_id}", response_model=EscalationView)
    async def get_escalation(proposal_id: str) -> EscalationView:
        pending = engine.get_escalation(proposal_id)
        if pending is None:
            raise HTTPException(status_code=404, detail=f"No pending escalation for {proposal_id}.")
        return EscalationView.from_pending(pending)

    @app.post("/api/escalations/{proposal_id}/verdict", response_model=OutcomeResponse)
    async def submit_verdict(proposal_id: str, request: VerdictRequest) -> OutcomeResponse:
        try:
            outcome = engine.resolve_escalation(proposal_id, request.approved, reviewer=request.reviewer)
        except UnknownEscalationError:
            raise HTTPException(status_code=404, detail=f"No pending escalation for {proposal_id}.") from None
        stream_bridge.publish_resolution(outcome)
        if on_change is not None:
            on_change()
        return OutcomeResponse.from_outcome(outcome)

    @app.get("/api/trust", response_model=TrustResponse)
    async def trust() -> TrustResponse:
        metrics = stability.compute(registry=engine.registry)
        return TrustResponse(
            version=engine.registry.version,
            calibrated=engine.registry.is_calibrated,
            scores=engine.registry.trust_snapshot(),
            global_variance=float(metrics["global_variance"]),
        )

    @app.get("/api/intents/{domain}")
    async def intents(domain: str) -> dict:
        items = [IntentView.from_intent(intent) for intent in engine.intent_cache.retrieve(domain)]
        return {"domain": domain, "items": [model_to_dict(item) for item in items], "count": len(items)}

    @app.websocket("/ws/escalations")
    async def ws_escalations(websocket: WebSocket) -> None:
        await websocket.accept()
        queue = stream_bridge.subscribe()
        try:
            while True:
                envelope = await queue.get()
                await websocket.send_json(model_to_dict(envelope))
        except WebSocketDisconnect:
            return
        finally:
            stream_bridge.unsubscribe(queue)

    return app


def build_standalone_app(
    *,
    state_dir: str | Path = "concord_state",
    config_path: str | Path | None = None,
    expiry_poll_interval: float = 30.0,
) -> FastAPI:
    root = Path(state_dir)
    root.mkdir(parents=True, exist_ok=True)
    config = load_config(config_path)
    registry_store = TrustRegistryStore(root / REGISTRY_FILENAME)
    intent_store = IntentCacheStore(root / INTENT_CACHE_FILENAME)
    registry = registry_store.load_registry(config=config)
    intent_cache = intent_store.load_cache(config=config)
    engine = ConsensusEngine(
        registry=registry,
        intent_cache=intent_cache,
        ledger=GovernanceAuditLedger(root / LEDGER_FILENAME),
        config=config,
    )

    def _persist() -> None:
        registry_store.save_atomic(registry)
        intent_store.save(intent_cache)
        logger.debug("review state persisted under %s", root)

    return create_app(engine=engine, on_change=_persist, expiry_poll_interval=expiry_poll_interval)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Concord human review channel.")
    parser.add_argument("--host", type=str, default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8020)
    parser.add_argument("--state-dir", type=str, default="concord_state")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--expiry-poll-interval", type=float, default=30.0)
    parser.add_argument("--log-level", type=str, default="info")
    parser.add_argument("--log-file", type=str, default=None)
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    if args.log_file:
        attach_file_handler(args.log_file, level=getattr(logging, str(args.log_level).upper(), logging.INFO))
    app = build_standalone_app(
        state_dir=args.state_dir,
        config_path=args.config,
        expiry_poll_interval=args.expiry_poll_interval,
    )
    import uvicorn

    uvicorn.run(
        app,
        host=args.host,
        port=max(1, int(args.port)),
        log_level=str(args.log_level),
    )


if __name__ == "__main__":
    main()
