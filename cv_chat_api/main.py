"""FastAPI application entrypoint for the CV Chat API."""

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from cv_chat_api import __version__
from cv_chat_api.completion_client import (
    CompletionClient,
    ProviderError,
    ProviderMisconfiguredError,
)
from cv_chat_api.config import get_settings
from cv_chat_api.conversation import ConversationService
from cv_chat_api.errors import ApiError, InputError, NotFoundError
from cv_chat_api.extractor import ContentExtractor, ExtractionError
from cv_chat_api.maintenance import ExpirySweeper
from cv_chat_api.models import (
    ErrorResponse,
    HealthResponse,
    QueryRequest,
    QueryResponse,
    SessionListResponse,
    StatusResponse,
    TranscriptResponse,
)
from cv_chat_api.observability import (
    generate_trace_id,
    log_completion_request,
    log_completion_response,
    set_trace_id,
)
from cv_chat_api.persistence import PersistenceCoordinator

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logging.basicConfig(level=get_settings().log_level, format="%(message)s")

logger = structlog.get_logger()

MISSING_KEY_ERROR = "OpenAI API Key no configurada en el servidor"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()
    logger.info("Starting CV Chat API", version=__version__)

    coordinator = PersistenceCoordinator.from_settings(settings)
    extractor = ContentExtractor()
    completion_client = CompletionClient()
    await extractor.connect()
    await completion_client.connect()
    if not completion_client.is_available:
        logger.warning("Completion provider not configured, questions will fail with 500")

    sweeper = ExpirySweeper(
        coordinator,
        retention=settings.session_retention,
        interval=settings.sweep_interval_seconds,
    )
    await sweeper.start()

    app.state.coordinator = coordinator
    app.state.extractor = extractor
    app.state.completion_client = completion_client

    yield

    # Cleanup on shutdown
    logger.info("Shutting down CV Chat API")
    await sweeper.stop()
    await coordinator.shutdown()
    await extractor.close()
    await completion_client.close()


# Create FastAPI app
app = FastAPI(
    title="CV Chat API",
    description="Answers questions about a résumé with per-session conversational memory",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Trace ID middleware for request correlation
@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Add trace ID to every request for log correlation."""
    trace_id = request.headers.get("X-Trace-ID", generate_trace_id())
    set_trace_id(trace_id)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(trace_id=trace_id)

    response = await call_next(request)

    response.headers["X-Trace-ID"] = trace_id
    return response


# Add Prometheus metrics
Instrumentator().instrument(app).expose(app)


# =============================================================================
# Error handlers
# =============================================================================


@app.exception_handler(ApiError)
async def api_error_handler(_request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error = "Método no permitido" if exc.status_code == 405 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": error},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Error interno del servidor", "message": str(exc)},
    )


# =============================================================================
# Dependencies
# =============================================================================


def get_coordinator(request: Request) -> PersistenceCoordinator:
    return request.app.state.coordinator


def get_extractor(request: Request) -> ContentExtractor:
    return request.app.state.extractor


def get_completion_client(request: Request) -> CompletionClient:
    return request.app.state.completion_client


def get_conversation_service(
    coordinator: Annotated[PersistenceCoordinator, Depends(get_coordinator)],
    extractor: Annotated[ContentExtractor, Depends(get_extractor)],
) -> ConversationService:
    return ConversationService(coordinator, extractor)


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check(
    coordinator: Annotated[PersistenceCoordinator, Depends(get_coordinator)],
    completion_client: Annotated[CompletionClient, Depends(get_completion_client)],
) -> HealthResponse:
    """Report configuration and persistence state."""
    stats = coordinator.get_stats()
    return HealthResponse(
        status="healthy" if completion_client.is_available else "degraded",
        durable_store_configured=stats["durable_configured"],
        completion_configured=completion_client.is_configured,
        active_sessions=stats["active_sessions"],
        pending_writes=stats["pending_writes"],
        version=__version__,
    )


@app.get("/api/test", response_model=StatusResponse)
async def status_check() -> StatusResponse:
    """Liveness check that also reports which credentials are present."""
    settings = get_settings()
    logger.info("Status endpoint called")
    return StatusResponse(
        message="Endpoint funcionando correctamente",
        environment=settings.environment,
        has_openai=settings.has_openai_key,
        has_redis_url=bool(settings.kv_rest_api_url),
        has_redis_token=bool(settings.kv_rest_api_token),
    )


# =============================================================================
# Question Endpoint
# =============================================================================


async def _read_query(request: Request) -> tuple[QueryRequest, bytes | None]:
    """Parse a JSON body or a multipart form with an optional ``pdf`` file."""
    content_type = request.headers.get("content-type", "")
    pdf: bytes | None = None

    if "multipart/form-data" in content_type:
        form = await request.form()
        fields: Any = {key: value for key, value in form.items() if isinstance(value, str)}
        upload = form.get("pdf")
        if isinstance(upload, UploadFile):
            pdf = await upload.read() or None
    else:
        try:
            fields = await request.json()
        except ValueError as e:
            raise InputError(f"Error parseando JSON: {e}") from e
        if not isinstance(fields, dict):
            raise InputError("Error parseando JSON: se esperaba un objeto")

    try:
        return QueryRequest.model_validate(fields), pdf
    except ValidationError as e:
        raise InputError("Solicitud inválida.", message=str(e)) from e


def _extraction_error_message(query: QueryRequest, pdf: bytes | None) -> str:
    if query.url:
        return "No se pudo obtener el texto de la URL."
    if pdf:
        return "No se pudo procesar el PDF."
    return "No se pudo obtener el texto de la URL por defecto."


@app.post(
    "/api/consultar",
    response_model=QueryResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def consultar(
    request: Request,
    service: Annotated[ConversationService, Depends(get_conversation_service)],
    completion_client: Annotated[CompletionClient, Depends(get_completion_client)],
) -> QueryResponse:
    """
    Answer a question about the CV.

    - **pregunta**: The user's question (required)
    - **sessionId**: Conversation id chosen by the caller (default: "default-session")
    - **url**: Optional page to use as reference text
    - **pdf**: Optional PDF upload (multipart only), used when no url is given
    """
    query, pdf = await _read_query(request)
    if not query.pregunta.strip():
        raise InputError("Falta la pregunta.")

    if not completion_client.is_available:
        raise ApiError(MISSING_KEY_ERROR, status_code=500)

    record = await service.get_or_create(
        query.session_id,
        user_agent=request.headers.get("user-agent", "unknown"),
    )

    logger.info(
        "Question received",
        session_id=query.session_id,
        question_length=len(query.pregunta),
        has_url=bool(query.url),
        has_pdf=pdf is not None,
    )

    try:
        context = await service.resolve_context(record, url=query.url or None, pdf=pdf)
    except ExtractionError as e:
        logger.warning("Context extraction failed", session_id=query.session_id, error=str(e))
        raise InputError(_extraction_error_message(query, pdf)) from e

    service.append_user_turn(record, query.pregunta)
    prompt = service.build_prompt(record, query.pregunta)

    settings = get_settings()
    request_log = log_completion_request(
        model=completion_client.model,
        session_id=query.session_id,
        prompt=prompt,
        context=context,
        question=query.pregunta,
        history_messages=len(service.prior_turns(record, query.pregunta)),
    )
    try:
        result = await completion_client.complete(
            prompt,
            max_tokens=settings.completion_max_tokens,
            temperature=settings.completion_temperature,
        )
    except ProviderMisconfiguredError as e:
        log_completion_response(request_log=request_log, error=str(e))
        raise ApiError(MISSING_KEY_ERROR, status_code=500) from e
    except ProviderError as e:
        log_completion_response(request_log=request_log, error=str(e))
        raise ApiError(f"Error procesando la consulta: {e}", status_code=500) from e

    log_completion_response(
        request_log=request_log,
        tokens_total=result.tokens_used,
        finish_reason=result.finish_reason or "stop",
    )

    service.append_assistant_turn(record, result.content)
    await service.persist(record)

    return QueryResponse(respuesta=result.content)


# =============================================================================
# Conversation Query Endpoints (read-only)
# =============================================================================


@app.get("/api/conversaciones")
async def conversaciones(
    service: Annotated[ConversationService, Depends(get_conversation_service)],
    action: str | None = None,
    session_id: Annotated[str | None, Query(alias="sessionId")] = None,
) -> JSONResponse:
    """List conversations (``?action=list``) or fetch one (``?sessionId=...``)."""
    if action == "list":
        listing = SessionListResponse(conversaciones=await service.list_sessions())
        return JSONResponse(content=jsonable_encoder(listing, by_alias=True))

    if session_id:
        record = await service.get(session_id)
        if record is None:
            return JSONResponse(
                status_code=404,
                content={
                    "sessionId": session_id,
                    "found": False,
                    "message": "Conversación no encontrada",
                },
            )
        conversation = record.model_dump(
            mode="json",
            by_alias=True,
            include={"messages", "created_at", "last_activity", "total_interactions"},
        )
        conversation["totalMessages"] = len(record.messages)
        return JSONResponse(
            content={"sessionId": session_id, "found": True, "conversation": conversation}
        )

    return JSONResponse(
        content={
            "message": "API de conversaciones activa",
            "usage": {
                "Listar conversaciones": "/api/conversaciones?action=list",
                "Ver conversación": "/api/conversaciones?sessionId=session_123",
            },
        }
    )


@app.get(
    "/api/conversacion",
    response_model=TranscriptResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def conversacion(
    service: Annotated[ConversationService, Depends(get_conversation_service)],
    session_id: Annotated[str | None, Query(alias="sessionId")] = None,
) -> TranscriptResponse:
    """Formatted transcript of one conversation."""
    if not session_id:
        raise InputError(
            "Falta sessionId",
            message="Usa: /api/conversacion?sessionId=tu_session_id",
        )

    record = await service.get(session_id)
    if record is None:
        raise NotFoundError("Conversación no encontrada", message=f"sessionId: {session_id}")

    return service.transcript(record)


# =============================================================================
# Entry point
# =============================================================================


def run() -> None:
    """Serve the app with uvicorn using host/port from settings."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "cv_chat_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )


if __name__ == "__main__":
    run()
