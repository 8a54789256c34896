"""Proxy perplexity scoring: one exchange per dataset item."""

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import Field, TypeAdapter, ValidationError

from aitestbench.adapters.base import ApiAdapter
from aitestbench.cancellation import CancellationToken
from aitestbench.executor import HttpTestExecutor
from aitestbench.models.base import Model
from aitestbench.models.definition import Assertion, RequestTemplate, TestDefinition
from aitestbench.models.result import StepResult, TestExecutionResult, Verdict
from aitestbench.templating import replace_placeholders

log = logging.getLogger(__name__)

FAILURE_SAMPLE_LIMIT = 3


class PerplexityItem(Model):
    """A multiple choice prompt with its expected answer."""

    prompt: str
    options: Sequence[str] = Field(default_factory=list)
    correct: str


_DATASET = TypeAdapter(list[PerplexityItem])


def load_perplexity_dataset(path: Path) -> Sequence[PerplexityItem]:
    """Load a JSON dataset of perplexity items.

    Raises:
        FileNotFoundError: If the dataset file does not exist
        ValueError: If the dataset is not a list of valid items

    """
    if not path.exists():
        raise FileNotFoundError(f"Proxy perplexity dataset not found: {path}")
    try:
        return _DATASET.validate_json(path.read_bytes())
    except ValidationError as e:
        raise ValueError(f"Invalid proxy perplexity dataset: {e}") from e


async def run_proxy_perplexity(
    *,
    test_id: str,
    definition: TestDefinition,
    executor: HttpTestExecutor,
    adapter: ApiAdapter,
    base_url: str,
    effective_settings: Mapping[str, Any],
    auth_headers: Mapping[str, str],
    dataset_path: Path | None,
    cancel_token: CancellationToken | None = None,
) -> TestExecutionResult:
    """Run the definition once per dataset item and score the accuracy."""
    started_at = datetime.now(UTC)

    def finish(
        verdict: Verdict,
        reason: str | None,
        steps: Sequence[StepResult] = (),
        scores: Mapping[str, Any] | None = None,
        artefacts: Mapping[str, Any] | None = None,
    ) -> TestExecutionResult:
        return TestExecutionResult(
            test_id=test_id,
            verdict=verdict,
            failure_reason=reason,
            started_at=started_at,
            ended_at=datetime.now(UTC),
            step_results=list(steps),
            metrics=scores,
            artefacts=artefacts,
        )

    if cancel_token is not None and cancel_token.cancelled:
        return finish("skip", "Canceled")

    if dataset_path is None:
        return finish("fail", "Proxy perplexity dataset path not configured.")

    try:
        items = load_perplexity_dataset(dataset_path)
    except (OSError, ValueError) as exc:
        return finish("fail", str(exc))

    if not items:
        return finish("fail", "Proxy perplexity dataset is empty.")

    steps: list[StepResult] = []
    failures: list[str] = []
    correct = 0

    template_data = (
        definition.request_template.model_dump()
        if definition.request_template
        else None
    )
    assertion_data = [assertion.model_dump() for assertion in definition.assertions]

    for item in items:
        if cancel_token is not None and cancel_token.cancelled:
            return finish("skip", "Canceled", steps)

        replacements = {"prompt": item.prompt, "correct": item.correct}
        template = (
            RequestTemplate.model_validate(
                replace_placeholders(template_data, replacements)
            )
            if template_data is not None
            else None
        )
        assertions = [
            Assertion.model_validate(replace_placeholders(data, replacements))
            for data in assertion_data
        ]

        outcome = await executor.execute(
            base_url=base_url,
            template=template,
            assertions=assertions,
            effective_settings=effective_settings,
            adapter=adapter,
            auth_headers=auth_headers,
            cancel_token=cancel_token,
        )
        steps.append(outcome.step.renumbered(len(steps)))

        if outcome.verdict == "skip":
            return finish("skip", outcome.failure_reason, steps)
        if outcome.verdict == "pass":
            correct += 1
        elif outcome.failure_reason:
            failures.append(outcome.failure_reason)

    total = len(items)
    accuracy = correct / total
    scores = {
        "proxy_accuracy": accuracy,
        "proxy_total": total,
        "proxy_correct": correct,
    }
    log.info("Proxy perplexity for %s: %d/%d correct", test_id, correct, total)

    passed = correct == total
    return finish(
        "pass" if passed else "fail",
        None if passed else f"Proxy accuracy {correct}/{total}",
        steps,
        scores=scores,
        artefacts={**scores, "failure_samples": failures[:FAILURE_SAMPLE_LIMIT]},
    )
