"""Conversation lifecycle: records, reference context, and prompt building."""

import structlog

from cv_chat_api.config import get_settings
from cv_chat_api.extractor import ContentExtractor
from cv_chat_api.models import (
    ConversationRecord,
    SessionSummary,
    TranscriptResponse,
    TranscriptTurn,
    Turn,
    utc_now,
)
from cv_chat_api.persistence import PersistenceCoordinator

logger = structlog.get_logger()

USER_LABEL = "Usuario"
HISTORY_HEADER = "\n\nHistorial de conversación reciente:\n"
MAX_LISTED_SESSIONS = 20


class ConversationService:
    """The only component that mutates ConversationRecord instances."""

    def __init__(
        self,
        coordinator: PersistenceCoordinator,
        extractor: ContentExtractor,
        default_source_url: str | None = None,
        persona_name: str | None = None,
        prompt_template: str | None = None,
        history_window: int | None = None,
    ):
        settings = get_settings()
        self._coordinator = coordinator
        self._extractor = extractor
        self._default_source_url = default_source_url or settings.default_source_url
        self._persona_name = persona_name or settings.persona_name
        self._prompt_template = prompt_template or settings.prompt_template
        self._history_window = history_window or settings.history_window

    @property
    def persona_name(self) -> str:
        return self._persona_name

    async def get_or_create(self, session_id: str, user_agent: str = "unknown") -> ConversationRecord:
        """Load the session's record, or start a new one (not saved yet)."""
        record = await self._coordinator.load(session_id)
        if record is not None:
            return record

        now = utc_now()
        logger.info("Starting new conversation", session_id=session_id)
        return ConversationRecord(
            session_id=session_id,
            created_at=now,
            last_activity=now,
            user_agent=user_agent,
        )

    async def resolve_context(
        self,
        record: ConversationRecord,
        url: str | None = None,
        pdf: bytes | None = None,
    ) -> str:
        """Pick the reference text for this turn.

        Priority: explicit URL, then PDF, then the record's stored context,
        then the default source. The record is only updated after a
        successful extraction.

        Raises:
            ExtractionError: If the extractor fails.
        """
        if url:
            text = await self._extractor.extract_from_url(url)
            source = "url"
        elif pdf:
            text = await self._extractor.extract_from_pdf(pdf)
            source = "pdf"
        elif record.context_text:
            return record.context_text
        else:
            text = await self._extractor.extract_from_url(self._default_source_url)
            source = "default"

        record.context_text = text
        logger.info(
            "Conversation context updated",
            session_id=record.session_id,
            source=source,
            chars=len(text),
        )
        return text

    def append_user_turn(self, record: ConversationRecord, content: str) -> Turn:
        turn = record.add_turn("user", content)
        record.last_activity = turn.timestamp
        record.total_interactions += 1
        return turn

    def append_assistant_turn(self, record: ConversationRecord, content: str) -> Turn:
        return record.add_turn("assistant", content)

    def prior_turns(self, record: ConversationRecord, question: str) -> list[Turn]:
        """Stored turns before the question currently being answered."""
        messages = record.messages
        if messages and messages[-1].role == "user" and messages[-1].content == question:
            messages = messages[:-1]
        return messages[-self._history_window :]

    def render_history(self, recent: list[Turn]) -> str:
        """Render turns as labelled user/assistant pairs.

        Turns are paired by position; a pair that is not user followed by
        assistant is left out.
        """
        lines = []
        for i in range(0, len(recent) - 1, 2):
            asked, answered = recent[i], recent[i + 1]
            if asked.role != "user" or answered.role != "assistant":
                continue
            lines.append(f"{USER_LABEL}: {asked.content}")
            lines.append(f"{self._persona_name}: {answered.content}")

        if not lines:
            return ""
        return HISTORY_HEADER + "\n".join(lines) + "\n\n"

    def build_prompt(self, record: ConversationRecord, question: str) -> str:
        history = self.render_history(self.prior_turns(record, question))
        return self._prompt_template.format(
            persona=self._persona_name,
            context=record.context_text,
            history=history,
            question=question,
        )

    async def persist(self, record: ConversationRecord) -> None:
        """Save the record. Failures are logged, never raised."""
        try:
            await self._coordinator.save(record.session_id, record)
        except Exception as e:
            logger.error(
                "Failed to persist conversation",
                session_id=record.session_id,
                error=str(e),
            )

    # -------------------------------------------------------------------------
    # Read-only projections
    # -------------------------------------------------------------------------

    async def get(self, session_id: str) -> ConversationRecord | None:
        return await self._coordinator.load(session_id)

    async def list_sessions(self, limit: int = MAX_LISTED_SESSIONS) -> list[SessionSummary]:
        """Most recently active sessions first."""
        summaries = []
        for session_id in await self._coordinator.list_session_ids():
            record = await self._coordinator.load(session_id)
            if record is not None:
                summaries.append(self.summarize(record))
        summaries.sort(key=lambda s: s.last_activity, reverse=True)
        return summaries[:limit]

    @staticmethod
    def summarize(record: ConversationRecord) -> SessionSummary:
        first_question = next((m.content for m in record.messages if m.role == "user"), None)
        return SessionSummary(
            session_id=record.session_id,
            total_messages=len(record.messages),
            created_at=record.created_at,
            last_activity=record.last_activity,
            total_interactions=record.total_interactions,
            first_message=first_question[:80] if first_question else "Sin mensajes",
        )

    def transcript(self, record: ConversationRecord) -> TranscriptResponse:
        return TranscriptResponse(
            session_id=record.session_id,
            total_mensajes=len(record.messages),
            ultima_actividad=record.last_activity,
            creada=record.created_at,
            total_interacciones=record.total_interactions,
            user_agent=record.user_agent,
            mensajes=[
                TranscriptTurn(
                    numero=index,
                    role=USER_LABEL if turn.role == "user" else self._persona_name,
                    contenido=turn.content,
                    timestamp=turn.timestamp,
                )
                for index, turn in enumerate(record.messages, start=1)
            ],
        )
