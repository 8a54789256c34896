"""Build, validate and persist the versioned result document of a test."""

import functools
import hashlib
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from pydantic import ValidationError

from aitestbench.context_strategy import ContextBudget
from aitestbench.models.definition import Target, TestDefinition
from aitestbench.models.result import StepResult, TestExecutionResult, TestResultRecord
from aitestbench.models.settings import ModelParams, request_timeout_sec
from aitestbench.store import RunStore, to_jsonable, to_rfc3339

log = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
BUNDLED_SCHEMA = Path(__file__).parent / "schemas" / "result-document.schema.json"
ID_LENGTH = 16
RAMP_NOT_SWEPT = "Context ramp not swept"


def _digest(*parts: object) -> str:
    joined = ":".join(str(part) for part in parts)
    return hashlib.sha256(joined.encode()).hexdigest()[:ID_LENGTH]


def step_id(run_id: str, test_id: str, step_index: int) -> str:
    """Stable identifier of a step; the same inputs always give the same id."""
    return _digest(run_id, test_id, step_index)


def assertion_id(run_id: str, test_id: str, step_index: int, ordinal: int) -> str:
    """Stable identifier of the ``ordinal``-th assertion of a step."""
    return _digest(run_id, test_id, step_index, ordinal)


def result_id(run_id: str, test_id: str, ordinal: int) -> str:
    """Identifier of the ``ordinal``-th test result of a run.

    Shared by the summary row and the result document of that test.
    """
    return _digest(run_id, test_id, "result", ordinal)


@dataclass(frozen=True, kw_only=True)
class SchemaIssue:
    """One violation reported by the result schema."""

    message: str
    path: str


@functools.cache
def _validator(schema_path: Path) -> Draft202012Validator:
    schema = json.loads(schema_path.read_text())
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_result_document(
    document: Mapping[str, Any], schema_path: Path | None = None
) -> list[SchemaIssue]:
    """Validate a document against the result schema.

    Args:
        document: JSON compatible result document
        schema_path: Schema file; the bundled schema when None

    Returns:
        Every issue found, ordered by location; empty when the document is valid

    """
    validator = _validator(schema_path or BUNDLED_SCHEMA)
    errors = sorted(validator.iter_errors(document), key=lambda e: list(e.path))
    return [
        SchemaIssue(message=error.message, path=error.json_path) for error in errors
    ]


def describe_effective_settings(
    effective_config: Mapping[str, Any],
    context: ContextBudget | None,
    default_timeout_sec: float,
    max_retries: int | None = None,
) -> dict[str, Any]:
    """Split effective settings into the generation, context and transport blocks.

    Only parameters that can reach a request body are listed under
    ``generation``; invalid values are left out rather than reported twice,
    since the executor already fails the step for them.
    """
    try:
        generation = ModelParams.from_settings(effective_config).to_body()
    except ValidationError:
        generation = {
            key: value
            for key, value in effective_config.items()
            if key in ModelParams.model_fields
        }
    budget = context or ContextBudget(max_context_tokens=None)
    try:
        timeout_sec = request_timeout_sec(effective_config, default_timeout_sec)
    except ValueError:
        timeout_sec = default_timeout_sec
    return {
        "generation": to_jsonable(generation),
        "context": {
            "max_context_tokens": budget.max_context_tokens,
            "truncation_policy": budget.truncation_policy,
            "ramp_sequence": list(budget.ramp_sequence),
        },
        "transport": {
            "stream": bool(effective_config.get("stream", False)),
            "timeout_ms": timeout_sec * 1000,
            "max_retries": max_retries,
        },
    }


@dataclass(frozen=True, kw_only=True)
class DocumentContext:
    """Run level snapshots shared by every document of a run."""

    run_id: str
    server: Target | None
    profile: Mapping[str, Any] | None
    selected_model: str | None
    effective_config: Mapping[str, Any] = field(default_factory=dict)
    context: ContextBudget | None = None
    default_timeout_sec: float = 30.0


def document_status(result: TestExecutionResult) -> str:
    """Document status: any errored step wins, then the test verdict.

    Canceled steps are ``skipped``, not errors, so a canceled test is ``skipped``.
    """
    if any(step.status == "error" for step in result.step_results):
        return "error"
    if result.verdict == "skip":
        return "skipped"
    return result.verdict


def _step_document(step: StepResult, run_id: str, test_id: str) -> dict[str, Any]:
    data = to_jsonable(step)
    data["assertions"] = [
        {
            "id": assertion_id(run_id, test_id, step.index, ordinal),
            **to_jsonable(outcome),
            "outcome": outcome.outcome,
        }
        for ordinal, outcome in enumerate(step.assertions)
    ]
    return {"id": step_id(run_id, test_id, step.index), **data}


def _summary(result: TestExecutionResult, warnings: Sequence[str]) -> dict[str, Any]:
    steps = result.step_results
    errors = [
        {
            "step_index": step.index,
            "code": step.error.code,
            "message": step.error.message,
        }
        for step in steps
        if step.status == "error" and step.error is not None
    ]
    if not steps and result.verdict == "fail":
        errors.append(
            {
                "step_index": None,
                "code": "test_failed",
                "message": result.failure_reason or "Test failed",
            }
        )
    return {
        "passed_steps": sum(1 for step in steps if step.status == "pass"),
        "failed_steps": sum(1 for step in steps if step.status in ("fail", "error")),
        "errors": errors,
        "warnings": list(warnings),
    }


def _server_snapshot(server: Target | None) -> dict[str, Any] | None:
    if server is None:
        return None
    return server.model_dump(mode="json", exclude={"defaults"})


def build_result_document(
    result: TestExecutionResult,
    context: DocumentContext,
    definition: TestDefinition | None = None,
    *,
    ordinal: int = 0,
) -> dict[str, Any]:
    """Assemble the result document of one test execution.

    Args:
        result: Outcome of the test as returned by the dispatcher
        context: Snapshots of the run the test belongs to
        definition: Test definition the result was produced from, when known
        ordinal: Position of the result within the run; together with the run
            and test ids it yields the ``result_id`` of the document

    Returns:
        JSON compatible document ready for validation and persistence

    """
    warnings: list[str] = []
    if context.context is not None and context.context.ramp_sequence:
        warnings.append(RAMP_NOT_SWEPT)

    duration = (result.ended_at - result.started_at).total_seconds() * 1000
    test_snapshot: dict[str, Any] = {"id": result.test_id}
    if definition is not None:
        test_snapshot |= {
            "version": definition.version,
            "name": definition.name,
            "protocols": list(definition.protocols),
        }

    return {
        "schema_version": SCHEMA_VERSION,
        "run_id": context.run_id,
        "result_id": result_id(context.run_id, result.test_id, ordinal),
        "status": document_status(result),
        "started_at": to_rfc3339(result.started_at),
        "ended_at": to_rfc3339(result.ended_at),
        "duration_ms": max(0, round(duration)),
        "test": test_snapshot,
        "profile": to_jsonable(context.profile) if context.profile else None,
        "server_instance": _server_snapshot(context.server),
        "selected_model": context.selected_model,
        "effective_settings": describe_effective_settings(
            context.effective_config,
            context.context,
            context.default_timeout_sec,
            definition.max_retries if definition else None,
        ),
        "steps": [
            _step_document(step, context.run_id, result.test_id)
            for step in result.step_results
        ],
        "final_assert": [],
        "summary": _summary(result, warnings),
    }


def build_test_result_record(
    result: TestExecutionResult, run_id: str, ordinal: int
) -> TestResultRecord:
    """Summary row of a test execution."""
    return TestResultRecord(
        id=result_id(run_id, result.test_id, ordinal),
        run_id=run_id,
        test_id=result.test_id,
        verdict=result.verdict,
        failure_reason=result.failure_reason,
        metrics=result.metrics,
        artefacts=result.artefacts,
        raw_events=result.raw_events,
        started_at=result.started_at,
        ended_at=result.ended_at,
    )


@dataclass(frozen=True, kw_only=True)
class ResultDocumentBuilder:
    """Persists a summary row and a result document per test execution.

    Schema violations are logged and the document is stored regardless.
    """

    store: RunStore
    schema_path: Path | None = None

    async def persist(
        self,
        result: TestExecutionResult,
        context: DocumentContext,
        *,
        ordinal: int,
        definition: TestDefinition | None = None,
    ) -> dict[str, Any]:
        """Build, validate and store the document of one test execution.

        Args:
            result: Outcome of the test
            context: Snapshots of the run
            ordinal: Position of the test within the run
            definition: Test definition, when it could be loaded

        Returns:
            The stored document

        """
        document = build_result_document(result, context, definition, ordinal=ordinal)
        issues = validate_result_document(document, self.schema_path)
        if issues:
            log.warning(
                "Result document of run %s test %s violates the result schema: %s",
                context.run_id,
                result.test_id,
                [{"message": issue.message, "path": issue.path} for issue in issues],
            )

        await self.store.insert_test_result(
            build_test_result_record(result, context.run_id, ordinal)
        )
        await self.store.insert_result_document(document)
        log.info(
            "Stored result document: run=%s test=%s status=%s",
            context.run_id,
            result.test_id,
            document["status"],
        )
        return document
