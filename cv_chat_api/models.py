"""Pydantic models for conversation state and API requests/responses."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Conversation Models
# =============================================================================


class Turn(BaseModel):
    """A single message in the conversation history."""

    role: Literal["user", "assistant"] = Field(..., description="Message role")
    content: str = Field(..., description="Message content")
    timestamp: datetime = Field(default_factory=utc_now)


class ConversationRecord(BaseModel):
    """Conversation state for one caller-chosen session id.

    Serialized with camelCase keys so records written to the durable store
    stay readable by other consumers of the same keys.
    """

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    messages: list[Turn] = Field(default_factory=list)
    context_text: str = Field(default="", alias="contextText")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    last_activity: datetime = Field(default_factory=utc_now, alias="lastActivity")
    total_interactions: int = Field(default=0, ge=0, alias="totalInteractions")
    user_agent: str = Field(default="unknown", alias="userAgent")

    def add_turn(self, role: Literal["user", "assistant"], content: str) -> Turn:
        """Append a turn to the history and return it."""
        turn = Turn(role=role, content=content)
        self.messages.append(turn)
        return turn

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload: str | bytes) -> "ConversationRecord":
        return cls.model_validate_json(payload)


# =============================================================================
# Query API Models
# =============================================================================


class QueryRequest(BaseModel):
    """Question sent to /api/consultar (JSON body or form fields)."""

    model_config = ConfigDict(populate_by_name=True)

    pregunta: str = Field(default="", description="User question")
    session_id: str = Field(
        default="default-session", alias="sessionId", description="Conversation id"
    )
    url: str = Field(default="", description="Optional page to extract context from")

    @field_validator("session_id", mode="before")
    @classmethod
    def _default_blank_session(cls, value: object) -> object:
        return value or "default-session"

    @field_validator("url", mode="before")
    @classmethod
    def _default_blank_url(cls, value: object) -> object:
        return value or ""


class QueryResponse(BaseModel):
    """Successful answer."""

    respuesta: str = Field(..., description="Assistant answer")


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    error: str
    message: str | None = None


# =============================================================================
# Health / Status Models
# =============================================================================


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Service status")
    durable_store_configured: bool = Field(..., description="Durable conversation store in use")
    completion_configured: bool = Field(..., description="Completion provider key present")
    active_sessions: int = Field(..., description="Sessions held in the transient cache")
    pending_writes: int = Field(..., description="Records waiting for the next batch flush")
    version: str = Field(..., description="API version")


class StatusResponse(BaseModel):
    """Response for the lightweight /api/test endpoint."""

    status: Literal["OK"] = "OK"
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    environment: str
    has_openai: bool = Field(..., alias="hasOpenAI")
    has_redis_url: bool = Field(..., alias="hasRedisUrl")
    has_redis_token: bool = Field(..., alias="hasRedisToken")

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Conversation Query Models (read-only)
# =============================================================================


class SessionSummary(BaseModel):
    """One entry of the conversation list."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    total_messages: int = Field(..., alias="totalMessages")
    created_at: datetime = Field(..., alias="createdAt")
    last_activity: datetime = Field(..., alias="lastActivity")
    total_interactions: int = Field(..., alias="totalInteractions")
    first_message: str = Field(..., alias="firstMessage")


class SessionListResponse(BaseModel):
    conversaciones: list[SessionSummary]


class TranscriptTurn(BaseModel):
    """A turn of a formatted transcript."""

    numero: int
    role: str
    contenido: str
    timestamp: datetime


class TranscriptResponse(BaseModel):
    """Human-oriented projection of a ConversationRecord."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    total_mensajes: int = Field(..., alias="totalMensajes")
    ultima_actividad: datetime = Field(..., alias="ultimaActividad")
    creada: datetime
    total_interacciones: int = Field(..., alias="totalInteracciones")
    user_agent: str = Field(..., alias="userAgent")
    mensajes: list[TranscriptTurn] = Field(default_factory=list)
