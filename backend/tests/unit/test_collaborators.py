"""
Unit Tests for Pipeline Collaborators
Groq scoring, Deepgram transcription, usage reporting and audio cleanup
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.domain.exceptions import JobFailure, TransientProcessingError
from app.domain.models.call_audit import AuditReportPayload, ParameterType, QAParameter
from app.infrastructure.llm.factory import ScoringFactory
from app.infrastructure.llm.groq_scoring import GroqScoringProvider
from app.infrastructure.reporting.usage_reporter import UsageReporter
from app.infrastructure.storage.audio_storage import LocalAudioStorage, SupabaseAudioStorage
from app.infrastructure.stt.deepgram_batch import DeepgramBatchTranscriptionProvider
from app.infrastructure.stt.factory import TranscriptionFactory


def groq_response(data, prompt_tokens: int = 100, completion_tokens: int = 40):
    content = data if isinstance(data, str) else json.dumps(data)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def result_item(parameter_id: str, score: float, **extra) -> dict:
    return {"parameter_id": parameter_id, "parameter_name": parameter_id.title(), "score": score, **extra}


@pytest.fixture
def groq_provider():
    provider = GroqScoringProvider()
    provider._client = MagicMock()
    provider._client.chat.completions.create = AsyncMock()
    return provider


class TestGroqScoring:
    """Tests for the Groq scoring provider"""

    @pytest.mark.asyncio
    async def test_weighted_score(self, groq_provider, parameter_set):
        groq_provider._client.chat.completions.create.return_value = groq_response({
            "call_summary": "Customer asked about a refund.",
            "audit_results": [
                result_item("greeting", 100, evidence=[{"text": "Hi, thanks for calling"}, "bogus"]),
                result_item("resolution", 70, weight=999),
                result_item("compliance", 90),
            ],
            "overall_score": 12,
            "sentiment": {"overall": "Positive", "customer": "neutral", "agent": "positive"},
        })

        result = await groq_provider.audit_call("Agent: hi", parameter_set.parameters)

        # (100*20 + 70*60 + 90*20) / 100, weights from the rubric
        assert result.overall_score == 80.0
        assert result.call_summary == "Customer asked about a refund."
        assert result.sentiment.overall.value == "positive"
        assert result.token_usage.total_tokens == 140
        assert result.audit_results[1].weight == 60
        assert [e.text for e in result.audit_results[0].evidence] == ["Hi, thanks for calling"]
        kwargs = groq_provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_fatal_parameter_zeroes_score(self, groq_provider, parameter_set):
        groq_provider._client.chat.completions.create.return_value = groq_response({
            "audit_results": [
                result_item("greeting", 100),
                result_item("resolution", 100),
                result_item("compliance", 30),
            ],
        })

        result = await groq_provider.audit_call("Agent: hi", parameter_set.parameters)

        assert result.overall_score == 0.0
        assert result.audit_results[2].type == ParameterType.FATAL

    @pytest.mark.asyncio
    async def test_scores_clamped(self, groq_provider):
        parameters = [QAParameter(id="tone", name="Tone", weight=1)]
        groq_provider._client.chat.completions.create.return_value = groq_response({
            "audit_results": [result_item("tone", 140)],
        })

        result = await groq_provider.audit_call("Agent: hi", parameters)

        assert result.audit_results[0].score == 100.0

    @pytest.mark.asyncio
    async def test_large_rubric_scored_in_batches(self, groq_provider):
        parameters = [QAParameter(id=f"p{i}", name=f"P{i}", weight=1) for i in range(7)]
        groq_provider._client.chat.completions.create.side_effect = [
            groq_response({
                "call_summary": "Short call.",
                "audit_results": [result_item(f"p{i}", 80) for i in range(5)],
            }),
            groq_response({"audit_results": [result_item(f"p{i}", 60) for i in range(5, 7)]}),
        ]

        result = await groq_provider.audit_call("Agent: hi", parameters)

        assert groq_provider._client.chat.completions.create.call_count == 2
        assert len(result.audit_results) == 7
        assert result.call_summary == "Short call."
        assert result.token_usage.total_tokens == 280
        assert result.overall_score == round((80 * 5 + 60 * 2) / 7, 2)

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self, groq_provider, parameter_set):
        groq_provider._client.chat.completions.create.return_value = groq_response("not json {")

        with pytest.raises(TransientProcessingError):
            await groq_provider.audit_call("Agent: hi", parameter_set.parameters)

    @pytest.mark.asyncio
    async def test_missing_parameter_is_transient(self, groq_provider, parameter_set):
        groq_provider._client.chat.completions.create.return_value = groq_response({
            "audit_results": [result_item("greeting", 100)],
        })

        with pytest.raises(TransientProcessingError):
            await groq_provider.audit_call("Agent: hi", parameter_set.parameters)

    @pytest.mark.asyncio
    async def test_empty_rubric_is_permanent(self, groq_provider):
        with pytest.raises(JobFailure):
            await groq_provider.audit_call("Agent: hi", [])

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("GROQ_API_KEY", raising=False)

        with pytest.raises(ValueError):
            await GroqScoringProvider().initialize({})

    @pytest.mark.asyncio
    async def test_factory_rejects_unknown_provider(self):
        with pytest.raises(ValueError):
            await ScoringFactory.create("unknown", {})


class TestDeepgramTranscription:
    """Tests for the Deepgram batch provider"""

    @pytest.fixture
    def provider(self):
        provider = DeepgramBatchTranscriptionProvider()
        provider._client = MagicMock()
        provider._client.listen.v1.media.transcribe_url = AsyncMock()
        return provider

    @staticmethod
    def response(transcript: str, language: str = "hi"):
        alternative = SimpleNamespace(transcript=transcript)
        channel = SimpleNamespace(alternatives=[alternative], detected_language=language)
        return SimpleNamespace(results=SimpleNamespace(channels=[channel]))

    @pytest.mark.asyncio
    async def test_transcribe(self, provider):
        provider._client.listen.v1.media.transcribe_url.return_value = self.response(" Namaste, how can I help? ")

        result = await provider.transcribe("https://cdn/a.wav")

        assert result.transcript == "Namaste, how can I help?"
        assert result.language == "hi"
        kwargs = provider._client.listen.v1.media.transcribe_url.call_args.kwargs
        assert kwargs["url"] == "https://cdn/a.wav"
        assert kwargs["model"] == "nova-2"

    @pytest.mark.asyncio
    async def test_empty_transcript_is_permanent(self, provider):
        provider._client.listen.v1.media.transcribe_url.return_value = self.response("   ")

        with pytest.raises(JobFailure):
            await provider.transcribe("https://cdn/silent.wav")

    @pytest.mark.asyncio
    async def test_api_error_is_transient(self, provider):
        provider._client.listen.v1.media.transcribe_url.side_effect = RuntimeError("502 Bad Gateway")

        with pytest.raises(TransientProcessingError):
            await provider.transcribe("https://cdn/a.wav")

    @pytest.mark.asyncio
    async def test_factory_rejects_unknown_provider(self):
        with pytest.raises(ValueError):
            await TranscriptionFactory.create("unknown", {})


def report_payload() -> AuditReportPayload:
    return AuditReportPayload(
        audit_id="c-1:0",
        campaign_name="March QA",
        overall_score=82,
        processing_duration_ms=1500,
        parameters_count=3,
        pass_status="pass",
    )


class TestUsageReporter:
    """Tests for admin panel usage reports"""

    @pytest.mark.asyncio
    async def test_disabled_without_credentials(self):
        reporter = UsageReporter(admin_panel_url="https://admin.example.com")

        assert reporter.is_enabled() is False
        assert await reporter.report_audit(report_payload()) is False
        assert reporter.report_in_background(report_payload()) is None

    @pytest.mark.asyncio
    async def test_report_sent(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        reporter = UsageReporter("https://admin.example.com/", "instance-key", client=client)

        assert await reporter.report_audit(report_payload()) is True

        request = requests[0]
        assert str(request.url) == "https://admin.example.com/api/admin/audit-reports"
        assert request.headers["X-API-Key"] == "instance-key"
        assert json.loads(request.content)["audit_id"] == "c-1:0"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_returns_false(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
        reporter = UsageReporter("https://admin.example.com", "instance-key", client=client)

        assert await reporter.report_audit(report_payload()) is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        reporter = UsageReporter("https://admin.example.com", "instance-key", client=client)

        assert await reporter.report_audit(report_payload()) is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_background_reports_flushed_on_close(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        reporter = UsageReporter("https://admin.example.com", "instance-key", client=client)

        task = reporter.report_in_background(report_payload())
        await reporter.close()

        assert task.done()
        assert len(requests) == 1
        await client.aclose()


class TestAudioStorage:
    """Tests for recording cleanup"""

    @pytest.mark.asyncio
    async def test_local_upload_deleted(self, tmp_path):
        recording = tmp_path / "call 1.wav"
        recording.write_bytes(b"RIFF")
        storage = LocalAudioStorage(str(tmp_path))

        assert await storage.delete("http://localhost:8000/uploads/call%201.wav") is True
        assert not recording.exists()
        assert await storage.delete("http://localhost:8000/uploads/call%201.wav") is False

    @pytest.mark.asyncio
    async def test_foreign_url_ignored(self, tmp_path):
        storage = LocalAudioStorage(str(tmp_path))

        assert await storage.delete("https://cdn.example.com/recordings/a.wav") is False

    @pytest.mark.asyncio
    async def test_path_traversal_refused(self, tmp_path):
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        secret = tmp_path / "secret.txt"
        secret.write_text("keep me")
        storage = LocalAudioStorage(str(uploads))

        assert await storage.delete("http://localhost/uploads/../secret.txt") is False
        assert secret.exists()

    @pytest.mark.asyncio
    async def test_supabase_object_removed(self):
        client = MagicMock()
        storage = SupabaseAudioStorage(client, bucket="recordings")

        deleted = await storage.delete(
            "https://xyz.supabase.co/storage/v1/object/public/recordings/campaigns/c-1/a.wav"
        )

        assert deleted is True
        client.storage.from_.assert_called_with("recordings")
        client.storage.from_.return_value.remove.assert_called_once_with(["campaigns/c-1/a.wav"])

    @pytest.mark.asyncio
    async def test_supabase_errors_swallowed(self):
        client = MagicMock()
        client.storage.from_.return_value.remove.side_effect = RuntimeError("storage down")
        storage = SupabaseAudioStorage(client, bucket="recordings")

        assert await storage.delete(
            "https://xyz.supabase.co/storage/v1/object/public/recordings/a.wav"
        ) is False
