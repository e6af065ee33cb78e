"""Agent messages gateway — FastAPI app exposing an agent as a messages API.

Loads config.yaml on startup and builds the configured engine. Exposes
POST /v1/messages (JSON or SSE), a token estimate endpoint, and operational
endpoints for service info, health, config viewing, and hot-reload.
"""

from __future__ import annotations

import logging
import math
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from gateway.config import get_config, load_config, reload_config
from gateway.engine import build_engine
from gateway.engine.base import Engine
from gateway.errors import GatewayError, ValidationError, error_body
from gateway.flattener import extract_system
from gateway.runtime import (
    complete_run,
    new_request_id,
    parse_upstream_credentials,
    prepare_run,
    stream_run,
)
from gateway.schemas import CountTokensRequest, MessagesRequest, TextSegment
from gateway.stats import RequestStats

SERVICE_NAME = "Agent Messages Gateway"
VERSION = "0.1.0"

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load config, build the engine and the request counters on startup."""
    config = load_config()
    if config.debug:
        logging.getLogger("gateway").setLevel(logging.DEBUG)
    app.state.engine = build_engine(config.engine)
    app.state.stats = RequestStats()
    logger.info(
        f"Gateway started (engine={config.engine}, model={config.defaults.model}, "
        f"cwd={config.defaults.cwd}, tools={','.join(config.defaults.allowed_tools)}, "
        f"thinking={config.defaults.enable_thinking} ({config.defaults.max_thinking_tokens} tokens), "
        f"permission_mode={config.defaults.permission_mode}, "
        f"auth={'enabled' if config.api_key else 'disabled'})"
    )
    yield
    logger.info("Gateway shutting down")


# Load config early so we can read allowed_origins for CORS middleware.
_boot_config = load_config()

app = FastAPI(title=SERVICE_NAME, version=VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request body"
    if request.url.path == "/v1/messages":
        request.app.state.stats.record_request()
        request.app.state.stats.record_failure()
    return JSONResponse(status_code=400, content=error_body("invalid_request_error", message))


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    error_type = "authentication_error" if exc.status_code == 401 else "api_error"
    return JSONResponse(status_code=exc.status_code, content=error_body(error_type, str(exc.detail)))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def verify_api_key(request: Request) -> None:
    """Validate X-API-Key header against the configured key.
    If no api_key is set in config, auth is disabled (dev mode).
    """
    config = get_config()
    if not config.api_key:
        return  # Auth disabled — no key configured

    key = request.headers.get("X-API-Key")
    if key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_stats(request: Request) -> RequestStats:
    return request.app.state.stats


def _upstream_env(request: Request) -> dict[str, str]:
    header = request.headers.get("authorization") or request.headers.get("x-api-key")
    return parse_upstream_credentials(header)


# ---------------------------------------------------------------------------
# Messages endpoint
# ---------------------------------------------------------------------------


@app.post("/v1/messages", dependencies=[Depends(verify_api_key)])
async def create_message(
    body: MessagesRequest,
    request: Request,
    engine: Engine = Depends(get_engine),
    stats: RequestStats = Depends(get_stats),
):
    """Run the agent for a conversation.

    Returns a full message, or Server-Sent Events when ``stream`` is true.
    """
    stats.record_request()
    request_id = new_request_id()

    try:
        run = prepare_run(body, get_config(), request_id, env=_upstream_env(request))
    except ValidationError as e:
        stats.record_failure()
        logger.info(f"[{request_id}] Rejected request: {e}")
        raise

    if body.stream:
        return StreamingResponse(
            stream_run(engine, run, stats),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    response = await complete_run(engine, run, stats)
    return JSONResponse(content=response.model_dump(exclude_none=True))


@app.post("/v1/messages/count-tokens", dependencies=[Depends(verify_api_key)])
async def count_tokens(body: CountTokensRequest):
    """Rough input token estimate: half a token per character of text."""
    total_chars = len(extract_system([], body.system) or "")
    for turn in body.messages:
        if isinstance(turn.content, str):
            total_chars += len(turn.content)
            continue
        for segment in turn.content:
            if isinstance(segment, TextSegment):
                total_chars += len(segment.text)
    return {"input_tokens": math.ceil(total_chars * 0.5)}


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/")
async def service_info(stats: RequestStats = Depends(get_stats)):
    """Service description and request statistics."""
    config = get_config()
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "running",
        "features": {
            "streaming": True,
            "history_replay": True,
            "thinking": config.defaults.enable_thinking,
            "tools": config.engine == "agent_sdk",
            "engine": config.engine,
        },
        "statistics": stats.snapshot(),
    }


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "healthy", "timestamp": int(time.time() * 1000)}


@app.get("/config")
async def get_current_config():
    """Return current config as JSON, API key redacted."""
    return get_config().public_view()


@app.post("/reload", dependencies=[Depends(verify_api_key)])
async def reload(request: Request):
    """Hot-reload config.yaml without container restart.

    Rebuilds the engine; request counters are kept.
    """
    try:
        new_config = reload_config()
        request.app.state.engine = build_engine(new_config.engine)
        return {"status": "reloaded", "engine": new_config.engine}
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")
