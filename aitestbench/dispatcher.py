"""Run dispatcher: resolves a run into tests and executes them in order."""

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from aitestbench.adapters.base import ApiAdapter
from aitestbench.adapters.loading import AdapterNotFoundError, load_adapter
from aitestbench.cancellation import CancellationToken
from aitestbench.catalog import Catalog
from aitestbench.executor import ExchangeOutcome, HttpTestExecutor
from aitestbench.models.definition import (
    Assertion,
    RequestTemplate,
    Target,
    TestDefinition,
)
from aitestbench.models.result import (
    RunExecutionResult,
    RunStatus,
    StepResult,
    TestExecutionResult,
    Verdict,
)
from aitestbench.perplexity import run_proxy_perplexity
from aitestbench.templating import replace_placeholders

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class RunExecutionRequest:
    """Everything the dispatcher needs to execute one run."""

    run_id: str
    target_id: str
    test_id: str | None = None
    suite_id: str | None = None
    profile_id: str | None = None
    profile_version: str | None = None
    effective_config: Mapping[str, Any] = field(default_factory=dict)
    cancel_token: CancellationToken | None = None


def build_auth_headers(target: Target) -> dict[str, str]:
    """Authentication headers for a target, read from its token variable."""
    auth = target.auth
    if auth.type == "none" or not auth.token_env:
        return {}
    token = os.environ.get(auth.token_env)
    if not token:
        log.warning(
            "Token variable %s of target %s is not set", auth.token_env, target.id
        )
        return {}
    match auth.type:
        case "bearer" | "oauth":
            return {auth.header_name: f"Bearer {token}"}
        case "basic":
            return {auth.header_name: f"Basic {token}"}
        case _:
            return {auth.header_name: token}


@dataclass(frozen=True, kw_only=True)
class RunDispatcher:
    """Executes the tests of a run sequentially against one target."""

    catalog: Catalog
    executor: HttpTestExecutor
    dry_run: bool = False
    proxy_perplexity_dataset: Path | None = None

    async def execute_run(self, request: RunExecutionRequest) -> RunExecutionResult:
        """Execute a run and aggregate the verdicts of its tests.

        Configuration problems (unknown target, suite or adapter, nothing to
        run) fail the run without results; a missing test definition fails
        only that test.
        """
        started_at = datetime.now(UTC)
        token = request.cancel_token

        def failed(reason: str) -> RunExecutionResult:
            log.warning("Run %s failed: %s", request.run_id, reason)
            return RunExecutionResult(
                status="failed",
                started_at=started_at,
                ended_at=datetime.now(UTC),
                failure_reason=reason,
            )

        try:
            target = await self.catalog.get_target(request.target_id)
            test_ids = await self._resolve_test_ids(request)
        except ValueError as exc:
            return failed(str(exc))

        if target is None:
            return failed("Target not found")
        if test_ids is None:
            return failed("Suite not found")
        if not test_ids:
            return failed("No tests provided")

        try:
            adapter = load_adapter(target.api_family)
        except AdapterNotFoundError as exc:
            return failed(str(exc))

        auth_headers = build_auth_headers(target)
        results: list[TestExecutionResult] = []

        log.info(
            "Run %s: executing %d test(s) against %s",
            request.run_id,
            len(test_ids),
            target.base_url,
        )
        for test_id in test_ids:
            if token is not None and token.cancelled:
                log.info(
                    "Run %s canceled after %d test(s)", request.run_id, len(results)
                )
                return RunExecutionResult(
                    status="canceled",
                    started_at=started_at,
                    ended_at=datetime.now(UTC),
                    failure_reason="Canceled",
                    results=results,
                )

            result = await self._run_test(
                request, test_id, target, adapter, auth_headers
            )
            log.info(
                "Test completed: run=%s test=%s verdict=%s",
                request.run_id,
                test_id,
                result.verdict,
            )
            results.append(result)

        status: RunStatus = (
            "failed" if any(r.verdict == "fail" for r in results) else "completed"
        )
        if token is not None and token.cancelled:
            status = "canceled"

        return RunExecutionResult(
            status=status,
            started_at=started_at,
            ended_at=datetime.now(UTC),
            results=results,
        )

    async def _resolve_test_ids(
        self, request: RunExecutionRequest
    ) -> Sequence[str] | None:
        """Ordered test ids of the run; None when the suite does not exist."""
        if request.test_id:
            return [request.test_id]
        if request.suite_id:
            suite = await self.catalog.get_suite(request.suite_id)
            if suite is None:
                return None
            return list(suite.ordered_test_ids)
        return []

    async def _run_test(
        self,
        request: RunExecutionRequest,
        test_id: str,
        target: Target,
        adapter: ApiAdapter,
        auth_headers: Mapping[str, str],
    ) -> TestExecutionResult:
        try:
            definition = await self.catalog.get_test_definition(test_id)
        except ValueError as exc:
            log.error("Test definition %s is invalid: %s", test_id, exc)
            return _synthetic_result(test_id, "fail", str(exc))

        if definition is None:
            return _synthetic_result(test_id, "fail", "Test definition not found")

        if self.dry_run:
            return _synthetic_result(test_id, "skip", "Dry run")

        log.info(
            "Executing test %s (version %s) for run %s",
            test_id,
            definition.version,
            request.run_id,
        )

        if definition.uses_proxy_perplexity:
            return await run_proxy_perplexity(
                test_id=test_id,
                definition=definition,
                executor=self.executor,
                adapter=adapter,
                base_url=target.base_url,
                effective_settings=request.effective_config,
                auth_headers=auth_headers,
                dataset_path=self.proxy_perplexity_dataset,
                cancel_token=request.cancel_token,
            )

        return await self._run_steps(
            request, test_id, definition, target, adapter, auth_headers
        )

    async def _run_steps(
        self,
        request: RunExecutionRequest,
        test_id: str,
        definition: TestDefinition,
        target: Target,
        adapter: ApiAdapter,
        auth_headers: Mapping[str, str],
    ) -> TestExecutionResult:
        """Execute the steps of a test, feeding extracted variables forward."""
        started_at = datetime.now(UTC)
        variables: dict[str, Any] = {}
        steps: list[StepResult] = []
        reasons: list[str] = []
        last: ExchangeOutcome | None = None

        for index, step_def in enumerate(definition.to_steps()):
            template = step_def.request_template
            assertions = list(step_def.assertions)
            if variables:
                if template is not None:
                    template = RequestTemplate.model_validate(
                        replace_placeholders(template.model_dump(), variables)
                    )
                assertions = [
                    Assertion.model_validate(
                        replace_placeholders(assertion.model_dump(), variables)
                    )
                    for assertion in assertions
                ]

            last = await self.executor.execute(
                base_url=target.base_url,
                template=template,
                assertions=assertions,
                effective_settings=request.effective_config,
                adapter=adapter,
                auth_headers=auth_headers,
                extract=step_def.extract,
                cancel_token=request.cancel_token,
            )
            steps.append(last.step.renumbered(index, step_def.name))
            if last.failure_reason:
                reasons.append(last.failure_reason)
            if last.step.vars_delta:
                variables.update(last.step.vars_delta)
            if last.step.status in ("error", "skipped"):
                break

        verdict: Verdict
        if last is not None and last.verdict == "skip":
            verdict = "skip"
        elif any(step.status != "pass" for step in steps):
            verdict = "fail"
        else:
            verdict = "pass"

        return TestExecutionResult(
            test_id=test_id,
            verdict=verdict,
            failure_reason="; ".join(reasons) or None,
            started_at=started_at,
            ended_at=datetime.now(UTC),
            step_results=steps,
            metrics=last.metrics if last else None,
            artefacts=last.artefacts if last else None,
            raw_events=last.raw_events if last else None,
        )


def _synthetic_result(
    test_id: str, verdict: Verdict, reason: str
) -> TestExecutionResult:
    now = datetime.now(UTC)
    return TestExecutionResult(
        test_id=test_id,
        verdict=verdict,
        failure_reason=reason,
        started_at=now,
        ended_at=now,
    )
