import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from agents import set_tracing_disabled
from fastapi import APIRouter, FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from agribot.models import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    HealthResponse,
    IndexResponse,
    NotFoundResponse,
)
from agribot.providers import build_provider
from agribot.relay import Relay, RelayError, wait_for_alerts
from agribot.settings import Settings, get_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("agribot")

ENDPOINTS = ["GET /", "GET /api/health", "POST /api/chatbot"]

router = APIRouter()


class BodyTooLarge(Exception):
    pass


def _error(status_code: int, text: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=text).model_dump())


def _relay_error(e: RelayError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content=ChatResponse(reply=e.reply).model_dump())


async def _read_body(request: Request, limit: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise BodyTooLarge()
    # chunked uploads carry no length, so count while reading
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise BodyTooLarge()
    return bytes(body)


async def not_found_handler(request: Request, exc: StarletteHTTPException):
    # unsupported methods on a known path count as unknown routes too
    if exc.status_code in (404, 405):
        body = NotFoundResponse(available_endpoints=ENDPOINTS)
        return JSONResponse(status_code=404, content=body.model_dump(by_alias=True))
    return await http_exception_handler(request, exc)


@router.get("/", response_model=IndexResponse)
async def index():
    return IndexResponse(
        message="Agriculture assistant API is running",
        status="running",
        endpoints=ENDPOINTS,
    )


@router.get("/api/health", response_model=HealthResponse)
async def health(request: Request):
    relay: Relay = request.app.state.relay
    return HealthResponse(
        status="ok",
        provider=relay.provider.name,
        configured=relay.configured,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.post(
    "/api/chatbot",
    response_model=ChatResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ChatResponse}},
)
async def chatbot(request: Request):
    relay: Relay = request.app.state.relay
    settings: Settings = request.app.state.settings
    try:
        relay.ensure_configured()
    except RelayError as e:
        return _relay_error(e)

    try:
        body = await _read_body(request, settings.max_body_bytes)
    except BodyTooLarge:
        return _error(413, "request body too large")

    try:
        payload = json.loads(body) if body.strip() else {}
    except ValueError:
        return _error(400, "invalid JSON body")
    try:
        chat_request = ChatRequest.model_validate(payload)
    except ValidationError:
        return _error(400, "message is required")

    try:
        reply = await relay.chat(chat_request.message)
    except RelayError as e:
        return _relay_error(e)
    return ChatResponse(reply=reply)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        set_tracing_disabled(not settings.tracing_enabled)
        provider = build_provider(settings)
        app.state.settings = settings
        app.state.relay = Relay(settings, provider)
        if not app.state.relay.configured:
            logger.warning("No API key configured for %s; chatbot requests will fail", provider.name)
        yield
        await wait_for_alerts()
        await provider.aclose()

    app = FastAPI(title="Agriculture Assistant Relay", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, not_found_handler)
    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    uvicorn.run("agribot.main:create_app", factory=True, host="0.0.0.0", port=get_settings().port)


if __name__ == "__main__":
    run()
