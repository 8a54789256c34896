"""Execute one HTTP exchange against an inference server."""

import hashlib
import json
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import aiohttp
from pydantic import ValidationError
from yarl import URL

from aitestbench.adapters.base import ApiAdapter, TokenUsage
from aitestbench.assertions import (
    MISSING,
    CapturedResponse,
    evaluate_assertions,
    get_json_path,
)
from aitestbench.cancellation import CancellationToken, RunCanceledError
from aitestbench.metrics import MetricResult, compute_metrics
from aitestbench.models.definition import Assertion, ExtractRule, RequestTemplate
from aitestbench.models.result import (
    ErrorCode,
    MetricsSnapshot,
    RequestSnapshot,
    ResponseSnapshot,
    StepError,
    StepResult,
    StepStatus,
    StepTiming,
    StreamEvent,
    StreamSnapshot,
    TransportSnapshot,
    Verdict,
)
from aitestbench.models.settings import ModelParams, request_timeout_sec
from aitestbench.redaction import redact_headers
from aitestbench.streaming import (
    Parsed,
    decode_json,
    decode_payload,
    parse_jsonl_events,
    parse_sse_events,
)

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0
PREVIEW_LENGTH = 500

SSE_CONTENT_TYPE = "text/event-stream"
JSONL_CONTENT_TYPES = ("application/x-ndjson", "application/jsonl")
JSON_CONTENT_TYPE = "application/json"


@dataclass(frozen=True, kw_only=True)
class ExchangeOutcome:
    """Result of one exchange: the step plus the test level view of it."""

    step: StepResult
    verdict: Verdict
    failure_reason: str | None
    metrics: Mapping[str, Any] | None
    artefacts: Mapping[str, Any] | None
    raw_events: Sequence[Mapping[str, Any]] | None


@dataclass(frozen=True, kw_only=True)
class _Capture:
    status: int
    headers: Mapping[str, str]
    text: str
    first_chunk_at: float | None
    completed_at: float


@dataclass(frozen=True, kw_only=True)
class _PreparedRequest:
    method: str
    url: URL
    headers: Mapping[str, str]
    body: Mapping[str, Any]
    body_text: str
    timeout_sec: float
    snapshot: RequestSnapshot


def _now_ms() -> float:
    return time.perf_counter() * 1000


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


def _unsent_request(
    base_url: str,
    template: RequestTemplate,
    adapter: ApiAdapter,
    auth_headers: Mapping[str, str] | None,
) -> RequestSnapshot:
    """Snapshot of a request that could not be built and was never sent."""
    headers = {**template.headers, **(auth_headers or {})}
    return RequestSnapshot(
        method=template.method,
        url=base_url.rstrip("/") + (template.path or adapter.default_path),
        headers=redact_headers(headers, sensitive=auth_headers or ()),
        query=None,
        body=dict(template.body_template),
        body_sha256=None,
        transport=None,
        timeout_ms=None,
    )


def build_metrics_snapshot(
    metrics: MetricResult, request_body_text: str, response_text: str
) -> MetricsSnapshot:
    """Flatten engine metrics into the per step snapshot."""
    total_ms = metrics.total_ms or 0.0
    ttfb_ms = metrics.ttfb_ms if metrics.ttfb_ms is not None else total_ms
    return MetricsSnapshot(
        ttfb_ms=ttfb_ms,
        total_ms=total_ms,
        bytes_in=len(response_text.encode()),
        bytes_out=len(request_body_text.encode()),
        tokens_in=metrics.prompt_tokens,
        tokens_out=metrics.completion_tokens,
        tok_s=metrics.tokens_per_sec,
    )


@dataclass(frozen=True, kw_only=True)
class HttpTestExecutor:
    """Sends requests built from templates and evaluates the responses.

    Every call returns an ``ExchangeOutcome``; unusable request settings,
    transport failures, timeouts and cancellation are reported in the outcome
    instead of raised.
    """

    session: aiohttp.ClientSession = field(repr=False)
    default_timeout_sec: float = DEFAULT_TIMEOUT_SEC

    async def execute(
        self,
        *,
        base_url: str,
        template: RequestTemplate | None,
        assertions: Sequence[Assertion],
        effective_settings: Mapping[str, Any] | None,
        adapter: ApiAdapter,
        auth_headers: Mapping[str, str] | None = None,
        extract: Sequence[ExtractRule] = (),
        cancel_token: CancellationToken | None = None,
    ) -> ExchangeOutcome:
        """Perform one exchange and evaluate it.

        Args:
            base_url: Target base URL
            template: Request template; the adapter defaults apply when None
            assertions: Assertions evaluated against the response
            effective_settings: Merged run settings; only allow-listed model
                parameters reach the request body
            adapter: API family adapter of the target
            auth_headers: Authentication headers of the target
            extract: Rules copying response values into run variables
            cancel_token: Token aborting the in-flight request when fired

        Returns:
            The step and its test level verdict

        """
        started_at = datetime.now(UTC)
        request_started = _now_ms()
        settings = effective_settings or {}
        template = template or RequestTemplate()

        try:
            params = ModelParams.from_settings(settings)
            prepared = self._prepare(
                base_url, template, params.to_body(), settings, adapter, auth_headers
            )
        except ValidationError as exc:
            message = f"Invalid model parameters: {exc.error_count()} error(s)"
            return self._error_outcome(
                _unsent_request(base_url, template, adapter, auth_headers),
                started_at,
                request_started,
                code="templating_error",
                message=message,
                details={
                    "errors": exc.errors(
                        include_url=False, include_input=False, include_context=False
                    )
                },
            )
        except (TypeError, ValueError) as exc:
            log.warning("Cannot build request for %s: %s", base_url, exc)
            return self._error_outcome(
                _unsent_request(base_url, template, adapter, auth_headers),
                started_at,
                request_started,
                code="templating_error",
                message=str(exc),
                details={"name": type(exc).__name__},
            )

        try:
            exchange = self._exchange(prepared)
            if cancel_token is not None:
                capture = await cancel_token.guard(exchange)
            else:
                capture = await exchange
        except RunCanceledError:
            log.info("Request to %s canceled", prepared.url)
            return self._error_outcome(
                prepared.snapshot,
                started_at,
                request_started,
                body_text=prepared.body_text,
                code="canceled",
                message="Canceled",
                status="skipped",
                verdict="skip",
            )
        except TimeoutError as exc:
            log.warning(
                "Request to %s timed out after %.1fs",
                prepared.url,
                prepared.timeout_sec,
            )
            return self._error_outcome(
                prepared.snapshot,
                started_at,
                request_started,
                body_text=prepared.body_text,
                code="timeout",
                message="Timeout",
                details={"name": type(exc).__name__},
            )
        except (aiohttp.ClientError, OSError) as exc:
            log.warning("Request to %s failed: %s", prepared.url, exc)
            return self._error_outcome(
                prepared.snapshot,
                started_at,
                request_started,
                body_text=prepared.body_text,
                code="connection_error",
                message=str(exc) or type(exc).__name__,
                details={"name": type(exc).__name__},
            )
        except Exception as exc:
            log.error("Unexpected failure requesting %s", prepared.url, exc_info=exc)
            return self._error_outcome(
                prepared.snapshot,
                started_at,
                request_started,
                body_text=prepared.body_text,
                code="unknown",
                message=str(exc) or "Request failed",
                details={"name": type(exc).__name__},
            )

        return self._evaluate(
            prepared,
            capture,
            assertions,
            extract,
            adapter,
            started_at,
            request_started,
        )

    def _prepare(
        self,
        base_url: str,
        template: RequestTemplate,
        model_params: Mapping[str, Any],
        settings: Mapping[str, Any],
        adapter: ApiAdapter,
        auth_headers: Mapping[str, str] | None,
    ) -> _PreparedRequest:
        """Build the request to send.

        Raises:
            ValueError: If the base URL or the timeout setting is unusable

        """
        base = URL(base_url)
        if not base.scheme or base.host is None:
            raise ValueError(f"Invalid base URL: {base_url!r}")
        url = base.join(URL(template.path or adapter.default_path))
        headers = {
            "content-type": "application/json",
            **template.headers,
            **(auth_headers or {}),
        }
        body = {**template.body_template, **model_params}
        body_text = json.dumps(body)
        timeout_sec = request_timeout_sec(settings, self.default_timeout_sec)
        transport_format = (
            template.transport.normalised_format() if template.transport else None
        )

        snapshot = RequestSnapshot(
            method=template.method,
            url=str(url),
            headers=redact_headers(headers, sensitive=auth_headers or ()),
            query=dict(url.query) or None,
            body=body,
            body_sha256=_sha256(body_text),
            transport=TransportSnapshot(
                stream=bool(body.get("stream", False)), format=transport_format
            ),
            timeout_ms=timeout_sec * 1000,
        )
        return _PreparedRequest(
            method=template.method,
            url=url,
            headers=headers,
            body=body,
            body_text=body_text,
            timeout_sec=timeout_sec,
            snapshot=snapshot,
        )

    async def _exchange(self, prepared: _PreparedRequest) -> _Capture:
        """Send the request and read the body incrementally."""
        chunks: list[bytes] = []
        first_chunk_at: float | None = None

        async with self.session.request(
            prepared.method,
            prepared.url,
            headers=prepared.headers,
            json=prepared.body,
            timeout=aiohttp.ClientTimeout(total=prepared.timeout_sec),
        ) as response:
            async for chunk in response.content.iter_any():
                if first_chunk_at is None:
                    first_chunk_at = _now_ms()
                chunks.append(chunk)
            charset = response.charset or "utf-8"
            text = b"".join(chunks).decode(charset, errors="replace")
            return _Capture(
                status=response.status,
                headers={key.lower(): value for key, value in response.headers.items()},
                text=text,
                first_chunk_at=first_chunk_at,
                completed_at=_now_ms(),
            )

    def _evaluate(
        self,
        prepared: _PreparedRequest,
        capture: _Capture,
        assertions: Sequence[Assertion],
        extract: Sequence[ExtractRule],
        adapter: ApiAdapter,
        started_at: datetime,
        request_started: float,
    ) -> ExchangeOutcome:
        content_type = capture.headers.get("content-type", "")

        body: Any = None
        if JSON_CONTENT_TYPE in content_type:
            decoded = decode_json(capture.text)
            if isinstance(decoded, Parsed):
                body = decoded.value

        stream: StreamSnapshot | None = None
        events: list[StreamEvent] = []
        if SSE_CONTENT_TYPE in content_type:
            stream = _decode_stream("sse", parse_sse_events(capture.text))
        elif any(kind in content_type for kind in JSONL_CONTENT_TYPES):
            stream = _decode_stream("jsonl", parse_jsonl_events(capture.text))
        if stream is not None:
            events = list(stream.events)

        usage = _safe_usage(adapter, body, events)
        metrics = compute_metrics(
            request_started_at=request_started,
            first_token_at=capture.first_chunk_at,
            completed_at=capture.completed_at,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        metrics_snapshot = build_metrics_snapshot(
            metrics, prepared.body_text, capture.text
        )

        report = evaluate_assertions(
            assertions,
            CapturedResponse(
                status=capture.status,
                body=body if body is not None else capture.text,
                text=capture.text,
                events=events,
            ),
        )

        vars_delta = {
            rule.name: value
            for rule in extract
            if (value := get_json_path(body, rule.path)) is not MISSING
        }

        response_snapshot = ResponseSnapshot(
            status=capture.status,
            headers=capture.headers,
            body=body,
            text=None if body is not None else capture.text,
            body_sha256=_sha256(capture.text) if capture.text else None,
            stream=stream,
            metrics=metrics_snapshot,
        )
        step = StepResult(
            index=0,
            name=None,
            status="pass" if report.verdict == "pass" else "fail",
            attempts=1,
            request=prepared.snapshot,
            response=response_snapshot,
            extract=[rule.model_dump() for rule in extract],
            vars_delta=vars_delta or None,
            assertions=report.outcomes,
            metrics=metrics_snapshot,
            timing=StepTiming(started_at=started_at, ended_at=datetime.now(UTC)),
        )
        return ExchangeOutcome(
            step=step,
            verdict=report.verdict,
            failure_reason="; ".join(report.failures) or None,
            metrics=metrics.to_dict(),
            artefacts={
                "status": capture.status,
                "headers": dict(capture.headers),
                "response_preview": capture.text[:PREVIEW_LENGTH],
            },
            raw_events=[_event_dict(event) for event in events] or None,
        )

    def _error_outcome(
        self,
        request: RequestSnapshot,
        started_at: datetime,
        request_started: float,
        *,
        code: ErrorCode,
        message: str,
        details: Mapping[str, Any] | None = None,
        body_text: str = "",
        status: StepStatus = "error",
        verdict: Verdict = "fail",
    ) -> ExchangeOutcome:
        metrics = compute_metrics(
            request_started_at=request_started, completed_at=_now_ms()
        )
        metrics_snapshot = build_metrics_snapshot(metrics, body_text, "")
        step = StepResult(
            index=0,
            name=None,
            status=status,
            attempts=1,
            request=request,
            response=ResponseSnapshot(
                status=0,
                headers={},
                body=None,
                text=None,
                body_sha256=None,
                stream=None,
                metrics=metrics_snapshot,
            ),
            metrics=metrics_snapshot,
            timing=StepTiming(started_at=started_at, ended_at=datetime.now(UTC)),
            error=StepError(code=code, message=message, details=details),
        )
        return ExchangeOutcome(
            step=step,
            verdict=verdict,
            failure_reason=message,
            metrics=None,
            artefacts=None,
            raw_events=None,
        )


def _decode_stream(format_: str, parsed: Any) -> StreamSnapshot:
    events: list[StreamEvent] = []
    done = False
    for seq, event in enumerate(parsed):
        if event.type == "done":
            done = True
            events.append(StreamEvent(raw="[DONE]", json=None, done=True, seq=seq))
            continue
        raw = event.payload or ""
        events.append(
            StreamEvent(
                raw=raw,
                json=decode_payload(raw) if raw else None,
                done=False,
                seq=seq,
            )
        )
    return StreamSnapshot(format=format_, events=events, done=done)


def _safe_usage(
    adapter: ApiAdapter, body: Any, events: Sequence[StreamEvent]
) -> TokenUsage:
    try:
        return adapter.extract_usage(body, events)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        log.warning("Adapter %s could not read token usage: %s", adapter.key, exc)
        return TokenUsage()


def _event_dict(event: StreamEvent) -> dict[str, Any]:
    return {"raw": event.raw, "json": event.json, "done": event.done, "seq": event.seq}
