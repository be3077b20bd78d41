"""
Vigil Continuous Authentication API

FastAPI host around the risk engine:
- POST /features, /features/batch → ingest feature vectors (202 + RiskState)
- GET  /state, WS /state/stream → current and streamed RiskState
- POST /biometric, /reset → host commands
- GET/POST /snapshot → export / restore baselines
- POST /calibration/demo → seed a synthetic calibration

One engine instance per process, built in the lifespan handler.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from core.config import EngineConfig, load_config
from core.exceptions import InvalidInputError, NotReadyError, SnapshotError
from core.orchestrator import VigilOrchestrator
from core.scheduler import PeriodicEvaluator, StateBroadcaster
from core.schemas.inputs import BiometricOutcomePayload, FeatureBatchPayload, FeatureVectorPayload
from core.schemas.outputs import BaselineSnapshot, RiskState
from persistence.baseline_store import BaselineStore


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


VERSION = "1.0.0"


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    config: Optional[EngineConfig] = None
    orchestrator: Optional[VigilOrchestrator] = None
    store: Optional[BaselineStore] = None
    evaluator: Optional[PeriodicEvaluator] = None
    broadcaster: Optional[StateBroadcaster] = None


state = AppState()


def _open_store() -> Optional[BaselineStore]:
    try:
        return BaselineStore()
    except (ValueError, RedisError) as e:
        logger.warning(f"Running without snapshot persistence: {e}")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Vigil engine...")
    state.config = load_config()
    state.store = _open_store()
    state.orchestrator = VigilOrchestrator(config=state.config, snapshot_sink=state.store)

    if state.store is not None:
        snapshot = state.store.load(state.config.profile_id)
        if snapshot is not None:
            try:
                state.orchestrator.restore_snapshot(snapshot)
            except SnapshotError as e:
                logger.error(f"Stored baseline unusable, starting calibration: {e}")

    state.broadcaster = StateBroadcaster()
    unsubscribe = state.broadcaster.attach(state.orchestrator)
    state.evaluator = PeriodicEvaluator(state.orchestrator, state.config.tick_interval_s)
    state.evaluator.start()
    logger.info("Vigil engine ready")

    yield

    # Shutdown
    logger.info("Shutting down Vigil engine...")
    await state.evaluator.stop()
    unsubscribe()
    state.orchestrator.close()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Vigil",
    description="On-device continuous behavioral authentication engine",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "persistence": state.store is not None,
    }


@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse
    return RedirectResponse(url="/docs")


# =============================================================================
# Ingestion Endpoints
# =============================================================================

@app.post("/features", response_model=RiskState, status_code=status.HTTP_202_ACCEPTED)
def submit_features(payload: FeatureVectorPayload):
    """
    Ingest one feature vector.

    - 422 when the vector does not have 10 features
    - Returns the state published after this sample
    """
    try:
        return state.orchestrator.submit_features(payload.features, payload.modality, payload.timestamp)
    except InvalidInputError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Feature ingestion error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error processing feature vector"
        )


@app.post("/features/batch", response_model=RiskState, status_code=status.HTTP_202_ACCEPTED)
def submit_feature_batch(payload: FeatureBatchPayload):
    """Ingest several vectors in order; stops at the first invalid one."""
    try:
        return state.orchestrator.submit_batch(
            [(v.features, v.modality, v.timestamp) for v in payload.vectors]
        )
    except InvalidInputError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Batch ingestion error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error processing feature batch"
        )


# =============================================================================
# State Endpoints
# =============================================================================

@app.get("/state", response_model=RiskState)
async def get_state():
    """Current published risk state."""
    return state.orchestrator.current_state


@app.websocket("/state/stream")
async def stream_state(websocket: WebSocket):
    """Push every published RiskState to the client as JSON."""
    await websocket.accept()
    queue = state.broadcaster.listen()
    try:
        await websocket.send_text(state.orchestrator.current_state.model_dump_json())
        while True:
            risk_state = await queue.get()
            await websocket.send_text(risk_state.model_dump_json())
    except WebSocketDisconnect:
        logger.debug("State stream client disconnected")
    finally:
        state.broadcaster.unlisten(queue)


# =============================================================================
# Command Endpoints
# =============================================================================

@app.post("/biometric", response_model=RiskState)
def submit_biometric(payload: BiometricOutcomePayload):
    """Report the outcome of a re-authentication prompt."""
    return state.orchestrator.submit_biometric_outcome(payload.outcome)


@app.post("/reset", response_model=RiskState)
def reset_session():
    """Discard baselines and models; calibration starts over."""
    if state.store is not None:
        state.store.delete(state.config.profile_id)
    return state.orchestrator.request_reset()


# =============================================================================
# Snapshot Endpoints
# =============================================================================

@app.get("/snapshot", response_model=BaselineSnapshot)
def get_snapshot():
    """Export established baselines (409 until a baseline exists)."""
    try:
        return state.orchestrator.snapshot()
    except NotReadyError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )


@app.post("/snapshot", response_model=RiskState)
def restore_snapshot(snapshot: BaselineSnapshot):
    """Restore baselines from a snapshot (422 on non-finite or malformed values)."""
    try:
        risk_state = state.orchestrator.restore_snapshot(snapshot)
    except SnapshotError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    if state.store is not None:
        state.store.save(snapshot)
    return risk_state


# =============================================================================
# Demo Mode
# =============================================================================

@app.post("/calibration/demo", response_model=RiskState)
def seed_demo_calibration(samples: int = Query(default=120, ge=30, le=1000)):
    """Seed touch and typing calibration with synthetic samples and train immediately."""
    return state.orchestrator.seed_demo_baseline(samples_per_modality=samples)


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
