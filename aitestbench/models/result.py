"""Models for execution outcomes: steps, tests and runs."""

import dataclasses
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

type StepStatus = Literal["pass", "fail", "error", "skipped"]
type Verdict = Literal["pass", "fail", "skip"]
type RunStatus = Literal["queued", "running", "completed", "failed", "canceled"]
type ErrorCode = Literal[
    "timeout",
    "connection_error",
    "http_error",
    "templating_error",
    "canceled",
    "unknown",
]

TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {"completed", "failed", "canceled"}
)


@dataclass(frozen=True, kw_only=True)
class StreamEvent:
    """One decoded event of a streamed response."""

    raw: str
    json: Any
    done: bool
    seq: int | None


@dataclass(frozen=True, kw_only=True)
class TransportSnapshot:
    """Transport actually used for a request."""

    stream: bool
    format: str | None


@dataclass(frozen=True, kw_only=True)
class RequestSnapshot:
    """Request as sent, with secrets redacted from the headers."""

    method: str
    url: str
    headers: Mapping[str, str]
    query: Mapping[str, str] | None
    body: Any
    body_sha256: str | None
    transport: TransportSnapshot | None
    timeout_ms: float | None


@dataclass(frozen=True, kw_only=True)
class MetricsSnapshot:
    """Per step timing, size and throughput figures."""

    ttfb_ms: float
    total_ms: float
    bytes_in: int | None
    bytes_out: int | None
    tokens_in: int | None
    tokens_out: int | None
    tok_s: float | None


@dataclass(frozen=True, kw_only=True)
class StreamSnapshot:
    """Decoded stream of a response."""

    format: str
    events: Sequence[StreamEvent]
    done: bool


@dataclass(frozen=True, kw_only=True)
class ResponseSnapshot:
    """Normalised response of a step."""

    status: int
    headers: Mapping[str, str]
    body: Any
    text: str | None
    body_sha256: str | None
    stream: StreamSnapshot | None
    metrics: MetricsSnapshot


@dataclass(frozen=True, kw_only=True)
class AssertionOutcome:
    """Outcome of evaluating one assertion."""

    type: str
    target: str
    selector: str | None
    op: str
    expected: Any
    actual: Any
    passed: bool
    message: str | None = None
    severity: Literal["error", "warn"] = "error"

    @property
    def outcome(self) -> Literal["pass", "fail"]:
        return "pass" if self.passed else "fail"


@dataclass(frozen=True, kw_only=True)
class StepError:
    """Why a step could not complete."""

    code: ErrorCode
    message: str
    details: Mapping[str, Any] | None = None


@dataclass(frozen=True, kw_only=True)
class StepTiming:
    started_at: datetime | None
    ended_at: datetime | None


@dataclass(frozen=True, kw_only=True)
class StepResult:
    """One HTTP exchange within a test."""

    index: int
    name: str | None
    status: StepStatus
    attempts: int
    request: RequestSnapshot
    response: ResponseSnapshot
    extract: Sequence[Mapping[str, Any]] = field(default_factory=list)
    vars_delta: Mapping[str, Any] | None = None
    assertions: Sequence[AssertionOutcome] = field(default_factory=list)
    metrics: MetricsSnapshot
    timing: StepTiming
    error: StepError | None = None
    notes: str | None = None

    def renumbered(self, index: int, name: str | None = None) -> "StepResult":
        """Copy of the step placed at ``index`` within its test."""
        return dataclasses.replace(
            self, index=index, name=name if name is not None else self.name
        )


@dataclass(frozen=True, kw_only=True)
class TestExecutionResult:
    """Per test outcome produced by the dispatcher."""

    __test__ = False

    test_id: str
    verdict: Verdict
    failure_reason: str | None
    started_at: datetime
    ended_at: datetime
    step_results: Sequence[StepResult] = field(default_factory=list)
    metrics: Mapping[str, Any] | None = None
    artefacts: Mapping[str, Any] | None = None
    raw_events: Sequence[Mapping[str, Any]] | None = None


@dataclass(frozen=True, kw_only=True)
class RunExecutionResult:
    """Aggregate outcome of a run."""

    status: RunStatus
    started_at: datetime
    ended_at: datetime
    results: Sequence[TestExecutionResult] = field(default_factory=list)
    failure_reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class RunRecord:
    """Persisted run row."""

    id: str
    target_id: str
    suite_id: str | None
    test_id: str | None
    profile_id: str | None
    profile_version: str | None
    status: RunStatus
    started_at: datetime
    ended_at: datetime | None
    environment_snapshot: Mapping[str, Any] | None
    retention_days: int | None


@dataclass(frozen=True, kw_only=True)
class TestResultRecord:
    """Persisted per test summary row."""

    __test__ = False

    id: str
    run_id: str
    test_id: str
    verdict: Verdict
    failure_reason: str | None
    metrics: Mapping[str, Any] | None
    artefacts: Mapping[str, Any] | None
    raw_events: Sequence[Mapping[str, Any]] | None
    started_at: datetime
    ended_at: datetime | None
