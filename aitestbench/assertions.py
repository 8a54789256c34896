"""Evaluate declarative assertions against a captured response."""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal

from aitestbench.models.definition import Assertion
from aitestbench.models.result import AssertionOutcome, StreamEvent

ACTUAL_TEXT_LIMIT = 500


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing()

_INDEX = re.compile(r"\[(\d+)\]")


@dataclass(frozen=True, kw_only=True)
class CapturedResponse:
    """What assertions can look at."""

    status: int
    body: Any
    text: str
    events: Sequence[StreamEvent] = field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class AssertionReport:
    """All assertion outcomes of a step."""

    verdict: Literal["pass", "fail"]
    failures: Sequence[str]
    outcomes: Sequence[AssertionOutcome]


def get_json_path(data: Any, path: str) -> Any:
    """Resolve a simplified ``$.a.b[0].c`` path.

    Returns ``MISSING`` when any segment does not resolve. A JSON ``null``
    found at the end of the path is a resolved value.
    """
    if not path.startswith("$."):
        return MISSING

    parts = [
        part
        for segment in path[2:].split(".")
        for part in _INDEX.split(segment)
        if part
    ]

    current = data
    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def evaluate_assertions(
    assertions: Sequence[Assertion], response: CapturedResponse
) -> AssertionReport:
    """Evaluate every assertion; a failure never stops the remaining checks."""
    outcomes = [_evaluate(assertion, response) for assertion in assertions]
    failures = [o.message or o.type for o in outcomes if not o.passed]
    return AssertionReport(
        verdict="fail" if failures else "pass",
        failures=failures,
        outcomes=outcomes,
    )


def _evaluate(assertion: Assertion, response: CapturedResponse) -> AssertionOutcome:
    match assertion.type:
        case "json_path_exists":
            selector = str(assertion.target or assertion.expected or "")
            value = get_json_path(response.body, selector)
            found = value is not MISSING
            return AssertionOutcome(
                type=assertion.type,
                target="body",
                selector=selector,
                op="exists",
                expected=assertion.expected,
                actual=value if found else None,
                passed=found,
                message=None if found else f"Missing json path: {selector}",
            )

        case "contains":
            expected = str(assertion.expected if assertion.expected is not None else "")
            passed = expected in response.text
            return AssertionOutcome(
                type=assertion.type,
                target="text",
                selector=None,
                op="contains",
                expected=expected,
                actual=response.text[:ACTUAL_TEXT_LIMIT],
                passed=passed,
                message=None if passed else f"Missing text: {expected}",
            )

        case "status_code_in":
            allowed = assertion.expected if isinstance(assertion.expected, list) else []
            passed = response.status in allowed
            return AssertionOutcome(
                type=assertion.type,
                target="status",
                selector=None,
                op="in",
                expected=allowed,
                actual=response.status,
                passed=passed,
                message=None if passed else f"Unexpected status: {response.status}",
            )

        case _:
            return AssertionOutcome(
                type=assertion.type,
                target="text",
                selector=None,
                op=assertion.type,
                expected=assertion.expected,
                actual=None,
                passed=False,
                message=f"Unsupported assertion: {assertion.type}",
            )
