import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from makerpoints.api.state import get_state
from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


# --- Data Models ---

class OrderModel(BaseModel):
    side: str
    client_order_id: str
    venue_order_id: str | None = None
    price: float
    quantity: float
    filled_quantity: float
    status: str


class StatsModel(BaseModel):
    orders_placed: int = 0
    orders_canceled: int = 0
    orders_filled: int = 0
    orders_replaced: int = 0
    flattens: int = 0


class StateModel(BaseModel):
    phase: str
    running: bool
    paused_for_volatility: bool
    fill_in_progress: bool
    symbol: str
    mode: str
    position: float
    mark_price: float | None = None
    last_price: float | None = None
    gap_bp: float | None = None
    buy_order: OrderModel | None = None
    sell_order: OrderModel | None = None
    stats: StatsModel
    uptime_seconds: float
    halt_reason: str | None = None


# --- API Implementation ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events."""
    logger.info("API Server starting up")
    yield
    logger.info("API Server shutting down")


app = FastAPI(title="Maker Points Bot API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all for unhandled exceptions (500 errors)."""
    logger.error(
        "Unhandled API Exception",
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={
            "type": "error",
            "error": {
                "type": "api_error",
                "message": "Internal server error (Local API)",
                "detail": str(exc) if not get_state().is_live else "See logs for details",
            },
            "status": "fail",
        },
    )


@app.get("/")
async def root():
    """API root - lists available endpoints."""
    state = get_state()
    controller = state.controller
    return {
        "name": "Maker Points Bot API",
        "version": state.version,
        "status": "online",
        "bot_running": controller.running if controller else False,
        "is_live": state.is_live,
        "endpoints": {
            "health": "/health",
            "state": "/state",
        },
        "docs": "/docs",
    }


@app.get("/state", response_model=StateModel)
async def get_controller_state():
    """Read-only snapshot of the quoting controller."""
    controller = get_state().controller
    if controller is None:
        return JSONResponse(status_code=503, content={"detail": "Controller not initialized"})
    return StateModel(**controller.get_state().to_dict())


@app.get("/health")
async def health_check():
    """200 while quoting with a live feed, 503 otherwise."""
    state = get_state()
    controller = state.controller
    feed = state.feed

    checks = {
        "controller_running": bool(controller and controller.running),
        "feed_connected": bool(feed and feed.is_connected),
    }
    healthy = all(checks.values())

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "online" if healthy else "degraded",
            "phase": controller.phase.value if controller else "uninitialized",
            "is_live": state.is_live,
            "checks": checks,
            "feed_silence_s": round(feed.last_message_age_seconds, 1) if feed and feed.is_connected else None,
            "event_bus": state.event_bus.stats if state.event_bus else {},
        },
    )
