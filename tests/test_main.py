"""Tests for the FastAPI endpoints."""

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from cv_chat_api.completion_client import CompletionResult, ProviderError, ProviderMisconfiguredError
from cv_chat_api.main import app, get_completion_client, get_extractor

DEFAULT_URL = "https://juanulisespv.github.io/cv-es/"


class FakeCompletionClient:
    """Completion client returning scripted answers and recording prompts."""

    def __init__(self, answers: list[str] | None = None, error: Exception | None = None):
        self.answers = answers or ["Trabajo en Vitoria, ¡y me encanta!"]
        self.error = error
        self.prompts: list[str] = []
        self.is_configured = True
        self.is_available = True
        self.model = "fake-model"

    async def complete(self, prompt, max_tokens=None, temperature=None) -> CompletionResult:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        answer = self.answers[min(len(self.prompts), len(self.answers)) - 1]
        return CompletionResult(content=answer, tokens_used=12, finish_reason="stop")


@pytest.fixture
def completion() -> FakeCompletionClient:
    return FakeCompletionClient(answers=["Trabajo en Vitoria.", "Sí, desde 2020."])


@pytest.fixture
def client(fake_extractor, completion) -> Iterator[TestClient]:
    app.dependency_overrides[get_extractor] = lambda: fake_extractor
    app.dependency_overrides[get_completion_client] = lambda: completion
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Tests for health and status endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["durable_store_configured"] is False
        assert data["active_sessions"] == 0
        assert data["pending_writes"] == 0
        assert "version" in data

    def test_health_v1_alias(self, client):
        assert client.get("/api/v1/health").status_code == 200

    def test_status_endpoint(self, client):
        response = client.get("/api/test")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["environment"] == "development"
        assert data["hasOpenAI"] is False
        assert data["hasRedisUrl"] is False
        assert data["hasRedisToken"] is False
        assert "timestamp" in data

    def test_metrics_exposed(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_trace_id_echoed(self, client):
        response = client.get("/health", headers={"X-Trace-ID": "abc123"})
        assert response.headers["X-Trace-ID"] == "abc123"

    def test_cors_preflight(self, client):
        response = client.options(
            "/api/consultar",
            headers={
                "Origin": "https://example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers


class TestConsultar:
    """Tests for POST /api/consultar."""

    def test_fresh_session(self, client, fake_extractor, completion):
        response = client.post("/api/consultar", json={"pregunta": "¿Dónde trabajas?", "sessionId": "s1"})

        assert response.status_code == 200
        assert response.json() == {"respuesta": "Trabajo en Vitoria."}
        assert fake_extractor.url_calls == [DEFAULT_URL]
        assert "Uli trabaja en Vitoria" in completion.prompts[0]
        assert "Historial de conversación reciente" not in completion.prompts[0]

    def test_second_question_reuses_context_and_history(self, client, fake_extractor, completion):
        client.post("/api/consultar", json={"pregunta": "¿Dónde trabajas?", "sessionId": "s1"})
        response = client.post("/api/consultar", json={"pregunta": "¿Desde cuándo?", "sessionId": "s1"})

        assert response.status_code == 200
        assert response.json()["respuesta"] == "Sí, desde 2020."
        assert fake_extractor.url_calls == [DEFAULT_URL]
        assert "Usuario: ¿Dónde trabajas?\nUli: Trabajo en Vitoria." in completion.prompts[1]
        assert completion.prompts[1].endswith("Pregunta actual: ¿Desde cuándo?\nRespuesta de Uli:")

    def test_transcript_after_exchanges(self, client):
        client.post("/api/consultar", json={"pregunta": "uno", "sessionId": "s1"})
        client.post("/api/consultar", json={"pregunta": "dos", "sessionId": "s1"})

        data = client.get("/api/conversacion", params={"sessionId": "s1"}).json()
        assert data["totalMensajes"] == 4
        assert data["totalInteracciones"] == 2
        assert [m["role"] for m in data["mensajes"]] == ["Usuario", "Uli", "Usuario", "Uli"]

    def test_default_session_id(self, client):
        client.post("/api/consultar", json={"pregunta": "hola"})

        response = client.get("/api/conversacion", params={"sessionId": "default-session"})
        assert response.status_code == 200
        assert response.json()["totalMensajes"] == 2

    def test_sessions_are_isolated(self, client, completion):
        client.post("/api/consultar", json={"pregunta": "pregunta de A", "sessionId": "a"})
        client.post("/api/consultar", json={"pregunta": "pregunta de B", "sessionId": "b"})

        assert "pregunta de A" not in completion.prompts[1]

    def test_explicit_url(self, client, fake_extractor, completion):
        response = client.post(
            "/api/consultar",
            json={"pregunta": "¿Qué sabes hacer?", "sessionId": "s1", "url": "https://example.com/cv"},
        )

        assert response.status_code == 200
        assert fake_extractor.url_calls == ["https://example.com/cv"]
        assert "marketing" in completion.prompts[0]

    def test_null_url_uses_default_source(self, client, fake_extractor):
        """A null url means no url was given."""
        response = client.post(
            "/api/consultar",
            json={"pregunta": "hola", "sessionId": "s1", "url": None},
        )

        assert response.status_code == 200
        assert fake_extractor.url_calls == [DEFAULT_URL]

    def test_unreachable_url_keeps_stored_context(self, client, completion):
        client.post("/api/consultar", json={"pregunta": "hola", "sessionId": "s1"})

        response = client.post(
            "/api/consultar",
            json={"pregunta": "¿y esto?", "sessionId": "s1", "url": "https://unreachable.invalid/"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "No se pudo obtener el texto de la URL."}

        client.post("/api/consultar", json={"pregunta": "¿sigues ahí?", "sessionId": "s1"})
        assert "Uli trabaja en Vitoria" in completion.prompts[-1]
        assert "¿y esto?" not in completion.prompts[-1]

    def test_default_source_unreachable(self, client, fake_extractor):
        fake_extractor.pages.clear()

        response = client.post("/api/consultar", json={"pregunta": "hola"})
        assert response.status_code == 400
        assert response.json()["error"] == "No se pudo obtener el texto de la URL por defecto."

    def test_multipart_pdf(self, client, fake_extractor, completion):
        response = client.post(
            "/api/consultar",
            data={"pregunta": "¿Qué estudiaste?", "sessionId": "pdf-session"},
            files={"pdf": ("cv.pdf", b"%PDF-1.4 fake", "application/pdf")},
        )

        assert response.status_code == 200
        assert fake_extractor.pdf_calls == 1
        assert fake_extractor.url_calls == []
        assert "PDF CV text" in completion.prompts[0]

    def test_unreadable_pdf(self, client):
        response = client.post(
            "/api/consultar",
            data={"pregunta": "¿Qué estudiaste?"},
            files={"pdf": ("cv.pdf", b"garbage", "application/pdf")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "No se pudo procesar el PDF."

    def test_missing_question(self, client, completion):
        response = client.post("/api/consultar", json={"sessionId": "s1"})

        assert response.status_code == 400
        assert response.json() == {"error": "Falta la pregunta."}
        assert completion.prompts == []

    def test_blank_question(self, client):
        response = client.post("/api/consultar", json={"pregunta": "   "})
        assert response.status_code == 400

    def test_invalid_json(self, client):
        response = client.post(
            "/api/consultar",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"].startswith("Error parseando JSON")

    def test_get_not_allowed(self, client):
        response = client.get("/api/consultar")

        assert response.status_code == 405
        assert response.json() == {"error": "Método no permitido"}

    def test_provider_failure_records_nothing(self, client, completion):
        completion.error = ProviderError("API error (503): upstream down")

        response = client.post("/api/consultar", json={"pregunta": "hola", "sessionId": "s1"})

        assert response.status_code == 500
        assert response.json()["error"] == "Error procesando la consulta: API error (503): upstream down"
        assert client.get("/api/conversacion", params={"sessionId": "s1"}).status_code == 404

    def test_provider_misconfigured(self, client, completion):
        completion.error = ProviderMisconfiguredError("no key")

        response = client.post("/api/consultar", json={"pregunta": "hola"})

        assert response.status_code == 500
        assert response.json() == {"error": "OpenAI API Key no configurada en el servidor"}

    def test_completion_unavailable(self, client, completion, fake_extractor):
        completion.is_available = False

        response = client.post("/api/consultar", json={"pregunta": "hola"})

        assert response.status_code == 500
        assert response.json() == {"error": "OpenAI API Key no configurada en el servidor"}
        assert fake_extractor.url_calls == []


class TestMockMode:
    """End-to-end with the real completion client in mock mode."""

    def test_mock_completions(self, monkeypatch, fake_extractor):
        monkeypatch.setenv("MOCK_COMPLETIONS", "true")
        app.dependency_overrides[get_extractor] = lambda: fake_extractor
        try:
            with TestClient(app) as client:
                response = client.post("/api/consultar", json={"pregunta": "¿Dónde trabajas?"})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 200
        assert "MOCK_COMPLETIONS=true" in response.json()["respuesta"]
        assert "¿Dónde trabajas?" in response.json()["respuesta"]

    def test_no_key_without_mock(self, fake_extractor):
        app.dependency_overrides[get_extractor] = lambda: fake_extractor
        try:
            with TestClient(app) as client:
                response = client.post("/api/consultar", json={"pregunta": "hola"})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json() == {"error": "OpenAI API Key no configurada en el servidor"}


class TestConversationQueries:
    """Tests for the read-only conversation endpoints."""

    def test_usage_message(self, client):
        response = client.get("/api/conversaciones")
        assert response.status_code == 200
        assert "usage" in response.json()

    def test_list(self, client):
        client.post("/api/consultar", json={"pregunta": "primera", "sessionId": "a"})
        client.post("/api/consultar", json={"pregunta": "segunda", "sessionId": "b"})

        data = client.get("/api/conversaciones", params={"action": "list"}).json()

        sessions = data["conversaciones"]
        assert [s["sessionId"] for s in sessions] == ["b", "a"]
        assert sessions[0]["firstMessage"] == "segunda"
        assert sessions[0]["totalMessages"] == 2
        assert sessions[0]["totalInteractions"] == 1

    def test_lookup_found(self, client):
        client.post("/api/consultar", json={"pregunta": "hola", "sessionId": "s1"})

        data = client.get("/api/conversaciones", params={"sessionId": "s1"}).json()

        assert data["found"] is True
        assert data["conversation"]["totalMessages"] == 2
        assert data["conversation"]["totalInteractions"] == 1
        assert data["conversation"]["messages"][0]["content"] == "hola"

    def test_lookup_missing(self, client):
        response = client.get("/api/conversaciones", params={"sessionId": "nada"})

        assert response.status_code == 404
        assert response.json() == {
            "sessionId": "nada",
            "found": False,
            "message": "Conversación no encontrada",
        }

    def test_transcript_requires_session_id(self, client):
        response = client.get("/api/conversacion")

        assert response.status_code == 400
        assert response.json()["error"] == "Falta sessionId"

    def test_transcript_not_found(self, client):
        response = client.get("/api/conversacion", params={"sessionId": "nada"})

        assert response.status_code == 404
        assert response.json()["error"] == "Conversación no encontrada"
