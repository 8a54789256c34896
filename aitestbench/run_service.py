"""Run lifecycle: resolve settings, dispatch, persist results."""

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import Field

from aitestbench.cancellation import CancellationRegistry
from aitestbench.catalog import Catalog
from aitestbench.context_strategy import resolve_context_strategy
from aitestbench.dispatcher import RunDispatcher, RunExecutionRequest
from aitestbench.models.base import Model
from aitestbench.models.definition import Profile, Target, TestDefinition
from aitestbench.models.result import RunExecutionResult, RunRecord, RunStatus
from aitestbench.result_document import DocumentContext, ResultDocumentBuilder
from aitestbench.settings import HarnessSettings
from aitestbench.store import RunStore, to_jsonable

log = logging.getLogger(__name__)

RUN_ID_LENGTH = 20


class CreateRunInput(Model):
    """Request to execute one test or one suite against a target."""

    target_id: str
    test_id: str | None = None
    suite_id: str | None = None
    profile_id: str | None = None
    profile_version: str | None = None
    test_overrides: Mapping[str, Any] = Field(default_factory=dict)
    profile_defaults: Mapping[str, Any] = Field(default_factory=dict)
    target_defaults: Mapping[str, Any] = Field(default_factory=dict)
    model_metadata: Mapping[str, Any] | None = None
    environment_snapshot: Mapping[str, Any] = Field(default_factory=dict)


def resolve_overrides(run_input: CreateRunInput) -> dict[str, Any]:
    """Merge settings layers; test overrides beat profile defaults beat target."""
    return {
        **run_input.target_defaults,
        **run_input.profile_defaults,
        **run_input.test_overrides,
    }


def build_run_id(run_input: CreateRunInput, now: datetime) -> str:
    """Run identifier derived from the target, the scope and the start time."""
    scope = run_input.test_id or run_input.suite_id
    key = f"{run_input.target_id}:{scope}:{int(now.timestamp() * 1000)}"
    return hashlib.sha256(key.encode()).hexdigest()[:RUN_ID_LENGTH]


def target_defaults(target: Target) -> dict[str, Any]:
    """Settings contributed by a target record."""
    defaults = dict(target.defaults)
    if target.default_model:
        defaults.setdefault("model", target.default_model)
    return defaults


def profile_defaults(profile: Profile) -> dict[str, Any]:
    """Settings contributed by a profile; generation parameters win."""
    return {**profile.execution_behaviour, **profile.generation_parameters}


def _profile_snapshot(
    run_input: CreateRunInput, profile: Profile | None
) -> dict[str, Any] | None:
    if profile is not None:
        return {"id": profile.id, "version": profile.version, "name": profile.name}
    if run_input.profile_id:
        return {"id": run_input.profile_id, "version": run_input.profile_version}
    return None


@dataclass(frozen=True, kw_only=True)
class RunService:
    """Creates runs, drives them through the dispatcher and persists results."""

    catalog: Catalog
    store: RunStore
    dispatcher: RunDispatcher
    registry: CancellationRegistry
    builder: ResultDocumentBuilder
    settings: HarnessSettings

    async def create_single_run(self, run_input: CreateRunInput) -> RunRecord:
        """Execute a run to completion and return its final row.

        Catalog records fill in the target and profile defaults the input does
        not provide. The cancellation token of the run is registered for the
        whole execution and always cleared afterwards.

        Raises:
            Exception: Unexpected failures are re-raised after the run has been
                marked failed.

        """
        target = await self._get_target(run_input.target_id)
        profile = await self._get_profile(run_input)

        run_input = run_input.model_copy(
            update={
                "target_defaults": {
                    **(target_defaults(target) if target else {}),
                    **run_input.target_defaults,
                },
                "profile_defaults": {
                    **(profile_defaults(profile) if profile else {}),
                    **run_input.profile_defaults,
                },
            }
        )
        effective_config = resolve_overrides(run_input)
        budget = resolve_context_strategy(
            target.context_window_tokens if target else None,
            profile.context_strategy if profile else None,
        )

        started_at = datetime.now(UTC)
        run_id = build_run_id(run_input, started_at)
        run = RunRecord(
            id=run_id,
            target_id=run_input.target_id,
            suite_id=run_input.suite_id,
            test_id=run_input.test_id,
            profile_id=run_input.profile_id,
            profile_version=run_input.profile_version,
            status="queued",
            started_at=started_at,
            ended_at=None,
            environment_snapshot={
                **run_input.environment_snapshot,
                "effective_config": to_jsonable(effective_config),
                "model_metadata": run_input.model_metadata,
                "context": to_jsonable(budget),
            },
            retention_days=self.settings.retention_days,
        )

        token = self.registry.register(run_id)
        try:
            await self.store.insert_run(run)
            await self.store.update_run_status(run_id, "running")
            log.info("Run %s started for target %s", run_id, run_input.target_id)

            try:
                outcome = await self.dispatcher.execute_run(
                    RunExecutionRequest(
                        run_id=run_id,
                        target_id=run_input.target_id,
                        test_id=run_input.test_id,
                        suite_id=run_input.suite_id,
                        profile_id=run_input.profile_id,
                        profile_version=run_input.profile_version,
                        effective_config=effective_config,
                        cancel_token=token,
                    )
                )
                await self._persist_results(
                    outcome,
                    DocumentContext(
                        run_id=run_id,
                        server=target,
                        profile=_profile_snapshot(run_input, profile),
                        selected_model=effective_config.get("model"),
                        effective_config=effective_config,
                        context=budget,
                        default_timeout_sec=self.settings.request_timeout_sec,
                    ),
                )
            except Exception as exc:
                log.error("Run %s failed unexpectedly", run_id, exc_info=exc)
                await self.store.update_run_status(
                    run_id, "failed", ended_at=datetime.now(UTC)
                )
                raise

            status: RunStatus = "canceled" if token.cancelled else outcome.status
            final = await self.store.update_run_status(
                run_id, status, ended_at=outcome.ended_at
            )
        finally:
            self.registry.clear(run_id)

        log.info(
            "Run %s finished with status %s (%d result(s))",
            run_id,
            status,
            len(outcome.results),
        )
        return final or run

    async def request_cancel_run(self, run_id: str) -> RunRecord | None:
        """Ask an executing run to stop.

        An executing run is moved to ``canceled`` right away; its own coroutine
        stops at the next cancellation point and leaves that status in place.

        Returns:
            The updated run row, or None for unknown runs

        """
        if not self.registry.cancel(run_id):
            log.info("Run %s is not executing; nothing to cancel", run_id)
            return await self.store.get_run(run_id)
        return await self.store.update_run_status(
            run_id, "canceled", ended_at=datetime.now(UTC)
        )

    async def _persist_results(
        self, outcome: RunExecutionResult, context: DocumentContext
    ) -> None:
        for ordinal, result in enumerate(outcome.results):
            definition = await self._get_definition(result.test_id)
            await self.builder.persist(
                result, context, ordinal=ordinal, definition=definition
            )

    async def _get_target(self, target_id: str) -> Target | None:
        try:
            return await self.catalog.get_target(target_id)
        except ValueError as exc:
            log.warning("Target %s could not be loaded: %s", target_id, exc)
            return None

    async def _get_profile(self, run_input: CreateRunInput) -> Profile | None:
        if not run_input.profile_id or not run_input.profile_version:
            return None
        try:
            profile = await self.catalog.get_profile(
                run_input.profile_id, run_input.profile_version
            )
        except ValueError as exc:
            log.warning("Profile %s could not be loaded: %s", run_input.profile_id, exc)
            return None
        if profile is None:
            log.warning(
                "Profile %s version %s not found",
                run_input.profile_id,
                run_input.profile_version,
            )
        return profile

    async def _get_definition(self, test_id: str) -> TestDefinition | None:
        try:
            return await self.catalog.get_test_definition(test_id)
        except ValueError:
            return None
