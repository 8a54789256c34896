"""Integration tests for the HTTP test executor."""

import asyncio

import aiohttp
from aioresponses import aioresponses as aioresponses_cls
from yarl import URL

from aitestbench.adapters import ollama_adapter, openai_adapter
from aitestbench.cancellation import CancellationToken
from aitestbench.executor import HttpTestExecutor
from aitestbench.models.definition import (
    Assertion,
    ExtractRule,
    RequestTemplate,
    TransportSpec,
)
from aitestbench.redaction import REDACTED
from aitestbench.testing.payloads import (
    jsonl_body,
    ollama_chat,
    openai_chat_completion,
    openai_stream_chunks,
    sse_body,
)

BASE_URL = "http://llm.test"
CHAT_URL = f"{BASE_URL}/v1/chat/completions"

CHAT_TEMPLATE = RequestTemplate(
    body_template={"messages": [{"role": "user", "content": "Say hello"}]}
)


class TestJsonExchange:
    """Tests for non streamed exchanges."""

    async def test_passes_and_captures_response(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Evaluates assertions and records metrics and usage."""
        aioresponses.post(CHAT_URL, payload=openai_chat_completion("Hello!"))

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[
                Assertion(type="status_code_in", expected=[200]),
                Assertion(type="json_path_exists", target="$.choices[0].message"),
                Assertion(type="contains", expected="Hello"),
            ],
            effective_settings={"model": "test-model"},
            adapter=openai_adapter,
        )

        assert outcome.verdict == "pass"
        assert outcome.failure_reason is None
        step = outcome.step
        assert step.status == "pass"
        assert step.attempts == 1
        assert step.response.status == 200
        assert step.response.body["choices"][0]["message"]["content"] == "Hello!"
        assert step.response.text is None
        assert step.metrics.tokens_in == 12
        assert step.metrics.tokens_out == 5
        assert step.metrics.bytes_in is not None and step.metrics.bytes_in > 0
        assert outcome.metrics is not None
        assert outcome.metrics["prompt_tokens"] == 12
        assert outcome.artefacts is not None
        assert outcome.artefacts["status"] == 200

    async def test_merges_allowed_settings_into_body(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Sends template body plus allow-listed settings only."""
        aioresponses.post(CHAT_URL, payload=openai_chat_completion())

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={
                "model": "test-model",
                "temperature": 0.0,
                "request_timeout_sec": 3,
                "retention_days": 7,
            },
            adapter=openai_adapter,
        )

        call = aioresponses.requests[("POST", URL(CHAT_URL))][0]
        assert call.kwargs["json"] == {
            "messages": [{"role": "user", "content": "Say hello"}],
            "model": "test-model",
            "temperature": 0.0,
        }
        assert call.kwargs["timeout"].total == 3.0
        assert outcome.step.request.timeout_ms == 3000.0
        assert outcome.step.request.body_sha256 is not None

    async def test_redacts_auth_headers_in_snapshot(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Sends credentials but never records them."""
        aioresponses.post(CHAT_URL, payload=openai_chat_completion())

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
            auth_headers={"Authorization": "Bearer s3cret"},
        )

        call = aioresponses.requests[("POST", URL(CHAT_URL))][0]
        assert call.kwargs["headers"]["Authorization"] == "Bearer s3cret"
        assert outcome.step.request.headers["Authorization"] == REDACTED

    async def test_failed_assertions(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Fails with every assertion message joined."""
        aioresponses.post(CHAT_URL, status=500, body="foo")

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[
                Assertion(type="status_code_in", expected=[200]),
                Assertion(type="contains", expected="bar"),
            ],
            effective_settings={},
            adapter=openai_adapter,
        )

        assert outcome.verdict == "fail"
        assert outcome.failure_reason == "Unexpected status: 500; Missing text: bar"
        assert outcome.step.status == "fail"
        assert outcome.step.response.body is None
        assert outcome.step.response.text == "foo"

    async def test_extracts_variables(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Copies resolved JSON paths into vars_delta."""
        aioresponses.post(CHAT_URL, payload=openai_chat_completion("Hi"))

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
            extract=[
                ExtractRule(name="answer", path="$.choices[0].message.content"),
                ExtractRule(name="absent", path="$.nope"),
            ],
        )

        assert outcome.step.vars_delta == {"answer": "Hi"}

    async def test_uses_adapter_default_path(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Targets the adapter's endpoint when the template has no path."""
        aioresponses.post(f"{BASE_URL}/api/chat", payload=ollama_chat())

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=None,
            assertions=[Assertion(type="json_path_exists", target="$.message")],
            effective_settings={"model": "llama3"},
            adapter=ollama_adapter,
        )

        assert outcome.verdict == "pass"
        assert outcome.step.request.url == f"{BASE_URL}/api/chat"
        assert outcome.step.metrics.tokens_out == 4


class TestStreamedExchange:
    """Tests for streamed exchanges."""

    async def test_decodes_sse(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Decodes events, detects the done marker and reads stream usage."""
        chunks = openai_stream_chunks(
            ("Hel", "lo"), usage={"prompt_tokens": 3, "completion_tokens": 2}
        )
        aioresponses.post(
            CHAT_URL, body=sse_body(chunks), content_type="text/event-stream"
        )

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=RequestTemplate(
                body_template={"messages": []},
                transport=TransportSpec(format="sse"),
            ),
            assertions=[Assertion(type="contains", expected="lo")],
            effective_settings={"stream": True},
            adapter=openai_adapter,
        )

        stream = outcome.step.response.stream
        assert outcome.verdict == "pass"
        assert stream is not None
        assert stream.format == "sse"
        assert stream.done is True
        assert len(stream.events) == 4
        assert stream.events[0].json["choices"][0]["delta"]["content"] == "Hel"
        assert outcome.step.request.transport is not None
        assert outcome.step.request.transport.stream is True
        assert outcome.step.request.transport.format == "sse"
        assert outcome.step.metrics.tokens_out == 2
        assert outcome.raw_events is not None
        assert outcome.raw_events[-1]["done"] is True

    async def test_malformed_event_is_kept_raw(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Keeps undecodable payloads as raw text."""
        aioresponses.post(
            CHAT_URL,
            body="data: {broken\n\ndata: [DONE]\n\n",
            content_type="text/event-stream",
        )

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
        )

        stream = outcome.step.response.stream
        assert stream is not None
        assert stream.events[0].json == {"raw": "{broken"}

    async def test_decodes_jsonl(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Splits newline-delimited JSON bodies into events."""
        aioresponses.post(
            f"{BASE_URL}/api/chat",
            body=jsonl_body(
                [
                    {"message": {"content": "Hel"}, "done": False},
                    ollama_chat(prompt_eval_count=5, eval_count=6),
                ]
            ),
            content_type="application/x-ndjson",
        )

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=None,
            assertions=[],
            effective_settings={"stream": True},
            adapter=ollama_adapter,
        )

        stream = outcome.step.response.stream
        assert stream is not None
        assert stream.format == "jsonl"
        assert len(stream.events) == 2
        assert outcome.step.metrics.tokens_in == 5


class TestErrors:
    """Tests for transport failures, which are reported and never raised."""

    async def test_timeout(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Reports a timeout error step."""
        aioresponses.post(CHAT_URL, exception=TimeoutError())

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[Assertion(type="status_code_in", expected=[200])],
            effective_settings={},
            adapter=openai_adapter,
        )

        assert outcome.verdict == "fail"
        assert outcome.failure_reason == "Timeout"
        assert outcome.step.status == "error"
        assert outcome.step.error is not None
        assert outcome.step.error.code == "timeout"
        assert outcome.step.response.status == 0
        assert outcome.step.assertions == []
        assert outcome.metrics is None

    async def test_connection_error(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Reports a connection error step."""
        aioresponses.post(
            CHAT_URL, exception=aiohttp.ClientConnectionError("refused")
        )

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
        )

        assert outcome.step.error is not None
        assert outcome.step.error.code == "connection_error"
        assert outcome.failure_reason == "refused"

    async def test_unexpected_error(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Reports anything else as unknown."""
        aioresponses.post(CHAT_URL, exception=RuntimeError("kaput"))

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
        )

        assert outcome.step.error is not None
        assert outcome.step.error.code == "unknown"
        assert outcome.step.error.details == {"name": "RuntimeError"}

    async def test_invalid_settings(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Reports invalid model parameters without sending a request."""
        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={"temperature": "hot"},
            adapter=openai_adapter,
        )

        assert outcome.step.error is not None
        assert outcome.step.error.code == "templating_error"
        assert not aioresponses.requests

    async def test_canceled_before_request(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Skips without sending when the run is already canceled."""
        token = CancellationToken(run_id="run-1")
        token.cancel()

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
            cancel_token=token,
        )

        assert outcome.verdict == "skip"
        assert outcome.failure_reason == "Canceled"
        assert outcome.step.error is not None
        assert outcome.step.error.code == "canceled"
        assert outcome.step.status == "skipped"
        assert not aioresponses.requests


class TestRequestPreparation:
    """Tests for requests that cannot be built from their settings."""

    async def test_custom_auth_header_is_redacted(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Masks the configured auth header even when its name looks harmless."""
        aioresponses.post(CHAT_URL, payload=openai_chat_completion("Hello!"))

        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
            auth_headers={"Ocp-Apim-Subscription-Key": "sk-live-SECRET"},
        )

        headers = outcome.step.request.headers
        assert headers["Ocp-Apim-Subscription-Key"] == REDACTED
        assert "sk-live-SECRET" not in str(outcome.step)
        call = aioresponses.requests[("POST", URL(CHAT_URL))][0]
        assert call.kwargs["headers"]["Ocp-Apim-Subscription-Key"] == "sk-live-SECRET"

    async def test_non_numeric_timeout(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Reports an unusable timeout setting without sending a request."""
        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={"request_timeout_sec": "fast"},
            adapter=openai_adapter,
            auth_headers={"X-Key": "k"},
        )

        assert outcome.verdict == "fail"
        assert outcome.step.status == "error"
        assert outcome.step.error is not None
        assert outcome.step.error.code == "templating_error"
        assert outcome.failure_reason == "Invalid request_timeout_sec: 'fast'"
        assert outcome.step.request.url == CHAT_URL
        assert outcome.step.request.headers["X-Key"] == REDACTED
        assert not aioresponses.requests

    async def test_non_positive_timeout(self, executor: HttpTestExecutor) -> None:
        """Rejects zero and negative timeouts."""
        outcome = await executor.execute(
            base_url=BASE_URL,
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={"request_timeout_sec": -1},
            adapter=openai_adapter,
        )

        assert outcome.step.error is not None
        assert outcome.step.error.code == "templating_error"

    async def test_relative_base_url(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Reports a base URL without scheme and host as a structured error."""
        outcome = await executor.execute(
            base_url="llm.test",
            template=CHAT_TEMPLATE,
            assertions=[],
            effective_settings={},
            adapter=openai_adapter,
        )

        assert outcome.step.error is not None
        assert outcome.step.error.code == "templating_error"
        assert outcome.failure_reason == "Invalid base URL: 'llm.test'"
        assert outcome.step.response.status == 0
        assert not aioresponses.requests


class TestInFlightCancellation:
    """Tests for cancellation while a request is outstanding."""

    async def test_cancel_during_exchange(
        self, executor: HttpTestExecutor, aioresponses: aioresponses_cls
    ) -> None:
        """Aborts the pending request and reports a skipped step."""
        token = CancellationToken(run_id="run-1")

        async def slow_answer(url: URL, **kwargs: object) -> None:
            token.cancel()
            await asyncio.sleep(5)

        aioresponses.post(
            CHAT_URL, payload=openai_chat_completion("late"), callback=slow_answer
        )

        outcome = await asyncio.wait_for(
            executor.execute(
                base_url=BASE_URL,
                template=CHAT_TEMPLATE,
                assertions=[Assertion(type="status_code_in", expected=[200])],
                effective_settings={},
                adapter=openai_adapter,
                cancel_token=token,
            ),
            timeout=2,
        )

        assert len(aioresponses.requests[("POST", URL(CHAT_URL))]) == 1
        assert outcome.verdict == "skip"
        assert outcome.failure_reason == "Canceled"
        assert outcome.step.status == "skipped"
        assert outcome.step.error is not None
        assert outcome.step.error.code == "canceled"
        assert outcome.step.response.status == 0
        assert outcome.step.assertions == []
