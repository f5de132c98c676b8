"""Environment configuration using pydantic-settings."""

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PROMPT_TEMPLATE = """Eres Juan Ulises ({persona}), un programador full stack y experto en marketing de Vitoria. Responde en primera persona usando la información del texto extraído y mantén coherencia con el historial de conversación previo.

- Recuerda lo que se ha hablado antes en esta conversación
- Si el usuario hace referencia a algo mencionado anteriormente, reconócelo
- Mantén un tono consistente y natural como si fuera una conversación continua
- La respuesta ideal tiene menos de 17 palabras, pero puedes usar hasta un máximo de 50 palabras si es necesario
- Usa un tono amable, gracioso y desenfadado, incluyendo chistes o comentarios divertidos cuando sea posible

Información de referencia sobre {persona}:
{context}{history}
Pregunta actual: {question}
Respuesta de {persona}:"""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Mock control (opt-in feature gate for testing)
    mock_completions: bool = False  # Use canned replies instead of calling the provider

    # Completion provider (OpenAI-compatible /completions endpoint)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    completion_model: str = "gpt-3.5-turbo-instruct"
    completion_max_tokens: int = 512
    completion_temperature: float = 0.7
    completion_timeout_seconds: float = 60.0

    # Durable conversation store (Redis REST API, e.g. Upstash / Vercel KV)
    kv_rest_api_url: str = Field(
        default="",
        validation_alias=AliasChoices(
            "kv_rest_api_url", "KV_REST_API_URL", "UPSTASH_REDIS_REST_URL"
        ),
    )
    kv_rest_api_token: str = Field(
        default="",
        validation_alias=AliasChoices(
            "kv_rest_api_token", "KV_REST_API_TOKEN", "UPSTASH_REDIS_REST_TOKEN"
        ),
    )
    kv_timeout_seconds: float = 5.0

    # Conversation persistence
    flush_debounce_seconds: float = 5.0
    session_retention_hours: float = 24.0
    sweep_interval_seconds: int = 3600
    max_sessions: int = 10000
    history_window: int = 8

    # Content extraction
    default_source_url: str = "https://juanulisespv.github.io/cv-es/"
    max_context_chars: int = 8000
    fetch_timeout_seconds: float = 15.0

    # Prompt
    persona_name: str = "Uli"
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE

    # Server configuration
    port: int = 3000
    host: str = "0.0.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production"] = "development"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def has_openai_key(self) -> bool:
        """Check if the completion provider API key is configured."""
        return bool(self.openai_api_key and self.openai_api_key.startswith("sk-"))

    @property
    def has_durable_store(self) -> bool:
        """Durable storage needs both the REST URL and the token."""
        return bool(self.kv_rest_api_url and self.kv_rest_api_token)

    @property
    def session_retention(self) -> timedelta:
        return timedelta(hours=self.session_retention_hours)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
