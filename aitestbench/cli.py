"""CLI entry point for running tests against an inference server."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import aiohttp

from aitestbench.cancellation import CancellationRegistry
from aitestbench.catalog import FileCatalog
from aitestbench.dispatcher import RunDispatcher
from aitestbench.executor import HttpTestExecutor
from aitestbench.models.result import RunRecord, TestResultRecord
from aitestbench.result_document import ResultDocumentBuilder
from aitestbench.run_service import CreateRunInput, RunService
from aitestbench.settings import HarnessSettings
from aitestbench.store import JsonDirectoryStore

STATUS_SYMBOLS = {
    "pass": "✓",
    "fail": "✗",
    "skip": "-",
}

DEFAULT_OUTPUT_DIR = Path(".aitestbench")


def log_results_summary(
    log: logging.Logger, run: RunRecord, results: Sequence[TestResultRecord]
) -> None:
    """Log a formatted summary of the test results of a run."""
    log.info("=" * 80)
    log.info("Run %s: %s", run.id, run.status)
    log.info("=" * 80)

    for result in results:
        symbol = STATUS_SYMBOLS.get(result.verdict, "?")
        duration = (
            (result.ended_at - result.started_at).total_seconds()
            if result.ended_at
            else 0.0
        )
        log.info("%s %s: %s (%.2fs)", symbol, result.test_id, result.verdict, duration)
        if result.failure_reason:
            log.info("  Reason: %s", result.failure_reason)


def format_output(
    run: RunRecord, results: Sequence[TestResultRecord]
) -> dict[str, Any]:
    """Format a run and its results for JSON output."""
    all_results = [
        {
            "test": result.test_id,
            "verdict": result.verdict,
            "failure_reason": result.failure_reason,
            "metrics": result.metrics,
        }
        for result in results
    ]
    return {
        "run_id": run.id,
        "status": run.status,
        "total": len(all_results),
        "passed": sum(1 for r in all_results if r["verdict"] == "pass"),
        "failed": sum(1 for r in all_results if r["verdict"] == "fail"),
        "skipped": sum(1 for r in all_results if r["verdict"] == "skip"),
        "results": all_results,
    }


class _RecordingStore(JsonDirectoryStore):
    """JSON store that also keeps the summary rows written during the run."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.results: list[TestResultRecord] = []

    async def insert_test_result(self, record: TestResultRecord) -> None:
        await super().insert_test_result(record)
        self.results.append(record)


async def run(
    catalog_path: Path,
    target_id: str,
    test_id: str | None = None,
    suite_id: str | None = None,
    profile_id: str | None = None,
    profile_version: str | None = None,
    overrides: Mapping[str, Any] | None = None,
    output_dir: Path = DEFAULT_OUTPUT_DIR,
    settings: HarnessSettings | None = None,
) -> int:
    """Run a test or suite and return the exit code."""
    log = logging.getLogger("aitestbench")
    settings = settings or HarnessSettings()

    log.info("Loading catalog from %s", catalog_path)
    catalog = FileCatalog(catalog_path)
    store = _RecordingStore(output_dir)

    async with aiohttp.ClientSession() as session:
        service = RunService(
            catalog=catalog,
            store=store,
            dispatcher=RunDispatcher(
                catalog=catalog,
                executor=HttpTestExecutor(
                    session=session,
                    default_timeout_sec=settings.request_timeout_sec,
                ),
                dry_run=settings.dry_run,
                proxy_perplexity_dataset=settings.proxy_perplexity_dataset,
            ),
            registry=CancellationRegistry(),
            builder=ResultDocumentBuilder(
                store=store, schema_path=settings.result_schema_path
            ),
            settings=settings,
        )
        record = await service.create_single_run(
            CreateRunInput(
                target_id=target_id,
                test_id=test_id,
                suite_id=suite_id,
                profile_id=profile_id,
                profile_version=profile_version,
                test_overrides=overrides or {},
            )
        )

    log_results_summary(log, record, store.results)

    output = format_output(record, store.results)
    print(json.dumps(output, indent=2))

    return 0 if record.status == "completed" else 1


def parse_overrides(raw: str) -> Mapping[str, Any]:
    """Parse the JSON object given as per test overrides."""
    if not raw.strip():
        return {}
    overrides = json.loads(raw)
    if not isinstance(overrides, dict):
        raise ValueError("Overrides must be a JSON object")
    return overrides


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run declarative tests against an LLM inference server"
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        required=True,
        help="Directory holding targets, tests, suites and profiles",
    )
    parser.add_argument("--target", required=True, help="Target ID")
    scope = parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--test", help="Test ID to run")
    scope.add_argument("--suite", help="Suite ID to run")
    parser.add_argument("--profile", help="Profile ID")
    parser.add_argument("--profile-version", help="Profile version")
    parser.add_argument(
        "--overrides",
        default="",
        help="JSON object of settings overriding target and profile defaults",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT_DIR,
        help="Directory where runs and result documents are written",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        overrides = parse_overrides(args.overrides)
    except ValueError as e:
        parser.error(f"--overrides: {e}")

    exit_code = asyncio.run(
        run(
            catalog_path=args.catalog,
            target_id=args.target,
            test_id=args.test,
            suite_id=args.suite,
            profile_id=args.profile,
            profile_version=args.profile_version,
            overrides=overrides,
            output_dir=args.output,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
