"""FastAPI control surface for a running trading engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from autotrade.config.schema import AggregationConfig, RiskLimits
from autotrade.engine.orchestrator import AutomatedTradingEngine

logger = structlog.get_logger("api")


class EmergencyStopRequest(BaseModel):
    reason: str = "manual emergency stop"


class ClosePositionRequest(BaseModel):
    reason: str = "manual"


def get_engine(request: Request) -> AutomatedTradingEngine:
    """Dependency to get the engine bound to this app."""
    return request.app.state.engine


def create_app(engine: AutomatedTradingEngine) -> FastAPI:
    """Build the control API around *engine*."""
    app = FastAPI(
        title="Autotrade Control API",
        description="Status, positions, and operator controls for the trading engine",
        version="0.1.0",
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/status")
    async def get_status(engine: AutomatedTradingEngine = Depends(get_engine)):
        status = engine.get_status().model_dump(mode="json")
        status["tracker"] = engine.tracker.get_status().model_dump(mode="json", exclude={"positions"})
        return status

    @app.get("/api/positions")
    async def list_positions(engine: AutomatedTradingEngine = Depends(get_engine)):
        return [p.model_dump(mode="json") for p in engine.tracker.positions.values()]

    @app.post("/api/signals", status_code=202)
    async def ingest_signal(
        payload: dict[str, Any],
        engine: AutomatedTradingEngine = Depends(get_engine),
    ):
        """Accept one raw signal; malformed payloads are rejected with 422."""
        accepted = await engine.on_signal(payload)
        if not accepted:
            raise HTTPException(status_code=422, detail="malformed signal")
        return {"accepted": True, "buffered": len(engine.buffer)}

    @app.post("/api/positions/{instrument}/close")
    async def close_position(
        instrument: str,
        body: Optional[ClosePositionRequest] = None,
        engine: AutomatedTradingEngine = Depends(get_engine),
    ):
        reason = body.reason if body is not None else "manual"
        if instrument not in engine.tracker.positions:
            raise HTTPException(status_code=404, detail=f"no position found for {instrument}")
        result = await engine.close_position(instrument, reason)
        if not result.ok:
            raise HTTPException(status_code=502, detail=result.reason)
        return result.model_dump(mode="json")

    @app.post("/api/emergency-stop")
    async def activate_emergency_stop(
        body: Optional[EmergencyStopRequest] = None,
        engine: AutomatedTradingEngine = Depends(get_engine),
    ):
        reason = body.reason if body is not None else "manual emergency stop"
        logger.warning("emergency_stop_requested", reason=reason)
        await engine.activate_emergency_stop(reason)
        return engine.get_status().model_dump(mode="json")

    @app.delete("/api/emergency-stop")
    async def reset_emergency_stop(engine: AutomatedTradingEngine = Depends(get_engine)):
        if not engine.reset_emergency_stop():
            raise HTTPException(status_code=409, detail="emergency stop is not active")
        return engine.get_status().model_dump(mode="json")

    @app.get("/api/config/risk-limits")
    async def get_risk_limits(engine: AutomatedTradingEngine = Depends(get_engine)):
        return engine.tracker.limits.model_dump()

    @app.put("/api/config/risk-limits")
    async def put_risk_limits(
        limits: RiskLimits,
        engine: AutomatedTradingEngine = Depends(get_engine),
    ):
        engine.update_config(limits=limits)
        return engine.tracker.limits.model_dump()

    @app.put("/api/config/aggregation")
    async def put_aggregation(
        config: AggregationConfig,
        engine: AutomatedTradingEngine = Depends(get_engine),
    ):
        engine.update_config(aggregation=config)
        return engine.aggregator.config.model_dump()

    @app.get("/api/queue")
    async def queue_snapshot(engine: AutomatedTradingEngine = Depends(get_engine)):
        queue = engine.tracker.queue
        metrics = queue.metrics()
        return {
            "halted": queue.halted,
            "pending": [t.model_dump(mode="json") for t in queue.pending()],
            "processing": [t.model_dump(mode="json") for t in queue.processing()],
            "metrics": {
                "total_processed": metrics.total_processed,
                "success_count": metrics.success_count,
                "error_count": metrics.error_count,
                "retry_count": metrics.retry_count,
                "cancelled_count": metrics.cancelled_count,
                "last_processed_at": (
                    metrics.last_processed_at.isoformat() if metrics.last_processed_at else None
                ),
            },
        }

    return app
