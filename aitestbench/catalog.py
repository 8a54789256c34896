"""Lookup of targets, tests, suites and profiles."""

import logging
import re
from pathlib import Path
from typing import Protocol

import yaml
from pydantic import BaseModel, ValidationError

from aitestbench.models.definition import Profile, Suite, Target, TestDefinition

log = logging.getLogger(__name__)


class Catalog(Protocol):
    """Read access to the administrative records a run needs."""

    async def get_target(self, target_id: str) -> Target | None:
        """Return the target, or None when it does not exist."""

    async def get_test_definition(self, test_id: str) -> TestDefinition | None:
        """Return the latest version of a test definition."""

    async def get_suite(self, suite_id: str) -> Suite | None:
        """Return the suite, or None when it does not exist."""

    async def get_profile(self, profile_id: str, version: str) -> Profile | None:
        """Return one version of a profile."""


async def load_yaml_model[M: BaseModel](path: Path, model_cls: type[M]) -> M:
    """Load and validate a YAML catalog file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is empty, not valid YAML or fails validation

    """
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        raise ValueError(f"Empty catalog file: {path}")

    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid {model_cls.__name__} schema in {path}: {e}") from e


def version_key(version: str) -> tuple[tuple[int, int | str], ...]:
    """Numeric aware ordering key, so "1.10" sorts after "1.9"."""
    return tuple(
        (0, int(part)) if part.isdigit() else (1, part)
        for part in re.split(r"[.\-_]", version)
    )


class FileCatalog:
    """Catalog backed by a directory of YAML files.

    Layout::

        targets/<id>.yaml
        tests/<id>/<version>.yaml
        suites/<id>.yaml
        profiles/<id>/<version>.yaml
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    async def get_target(self, target_id: str) -> Target | None:
        return await self._load(self.root / "targets" / f"{target_id}.yaml", Target)

    async def get_test_definition(self, test_id: str) -> TestDefinition | None:
        test_dir = self.root / "tests" / test_id
        if not test_dir.is_dir():
            return None
        versions = sorted(test_dir.glob("*.yaml"), key=lambda p: version_key(p.stem))
        if not versions:
            return None
        return await self._load(versions[-1], TestDefinition)

    async def get_suite(self, suite_id: str) -> Suite | None:
        return await self._load(self.root / "suites" / f"{suite_id}.yaml", Suite)

    async def get_profile(self, profile_id: str, version: str) -> Profile | None:
        return await self._load(
            self.root / "profiles" / profile_id / f"{version}.yaml", Profile
        )

    async def _load[M: BaseModel](self, path: Path, model_cls: type[M]) -> M | None:
        try:
            return await load_yaml_model(path, model_cls)
        except FileNotFoundError:
            log.debug("Catalog entry missing: %s", path)
            return None
