"""
Project mapping and per-environment defaults.

The project mapping file (``.docshiftrc`` by default) maps environment
selectors to project ids and project ids to database locations:

    {
      "projects": {
        "default": "tradeya-dev",
        "staging": "tradeya-staging",
        "production": "tradeya-prod"
      },
      "databases": {
        "tradeya-prod": "/var/lib/docshift/tradeya-prod.sqlite3"
      },
      "productionEnvironments": ["production"]
    }

An environment selector is never inferred from ambient defaults: it must
either be a key of ``projects`` or one of the configured project ids.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from docshift.exceptions import (
    ConfigurationError,
    MalformedConfigError,
    UnresolvedEnvironmentError,
)
from docshift.executor import ExecutorConfig
from docshift.indexes.definitions import _format_problems
from docshift.models import ExecutionMode
from docshift.retry import BackoffStrategy, RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = ".docshiftrc"
DEFAULT_DATA_DIR = Path(".docshift")
DEFAULT_PRODUCTION_ENVIRONMENTS = ("production", "prod")


class ProjectMapping(BaseModel):
    """Parsed project mapping file."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    projects: dict[str, str] = Field(min_length=1)
    databases: dict[str, str] = Field(default_factory=dict)
    production_environments: tuple[str, ...] = Field(
        default=DEFAULT_PRODUCTION_ENVIRONMENTS, alias="productionEnvironments"
    )

    @field_validator("projects")
    @classmethod
    def _no_blank_project_ids(cls, value: dict[str, str]) -> dict[str, str]:
        blank = [name for name, project_id in value.items() if not project_id.strip()]
        if blank:
            raise ValueError(f"blank project id for {', '.join(sorted(blank))}")
        return value

    def resolve(self, environment: str) -> ResolvedEnvironment:
        """
        Resolve an environment selector.

        Raises:
            UnresolvedEnvironmentError: If the selector matches no project
        """
        if environment in self.projects:
            name, project_id = environment, self.projects[environment]
        elif environment in self.projects.values():
            project_id = environment
            name = next(k for k, v in self.projects.items() if v == project_id)
        else:
            raise UnresolvedEnvironmentError(environment, list(self.projects))

        database = self.databases.get(project_id)
        return ResolvedEnvironment(
            environment=name,
            project_id=project_id,
            database=database or str(DEFAULT_DATA_DIR / f"{project_id}.sqlite3"),
            is_production=(
                name in self.production_environments
                or project_id in self.production_environments
            ),
        )


@dataclass(frozen=True)
class ResolvedEnvironment:
    """
    An environment selector resolved through the project mapping.

    Attributes:
        environment: Environment name (key of ``projects``)
        project_id: Project id; also the expected database id
        database: Database location for the SQLite store
        is_production: Whether production safeguards apply
    """

    environment: str
    project_id: str
    database: str
    is_production: bool = False


def load_project_mapping(path: str | Path = DEFAULT_CONFIG_FILE) -> ProjectMapping:
    """
    Read and validate a project mapping file.

    Raises:
        ConfigurationError: If the file does not exist
        MalformedConfigError: If the file is not valid JSON or has unknown keys
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Project mapping {path} not found",
            suggested_action=f"Create {path} with a 'projects' mapping",
        ) from e
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedConfigError(str(path), [f"invalid JSON: {e}"]) from e
    try:
        mapping = ProjectMapping.model_validate(data)
    except ValidationError as e:
        raise MalformedConfigError(str(path), _format_problems(e)) from e
    logger.debug("Loaded %d project(s) from %s", len(mapping.projects), path)
    return mapping


@dataclass(frozen=True)
class EnvironmentProfile:
    """
    Conservative executor defaults per environment class.

    Production pages are smaller, retried more often and spaced further
    apart than anywhere else.
    """

    page_size: int
    max_retries: int
    inter_page_delay_seconds: float
    retry_delay_seconds: float = 2.0

    @classmethod
    def for_environment(cls, resolved: ResolvedEnvironment) -> EnvironmentProfile:
        if resolved.is_production:
            return PRODUCTION_PROFILE
        return DEFAULT_PROFILE

    @property
    def retry(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.retry_delay_seconds,
            strategy=BackoffStrategy.FIXED,
        )

    def executor_config(self, mode: ExecutionMode, **overrides: Any) -> ExecutorConfig:
        """Build an ExecutorConfig from the profile; None overrides are ignored."""
        config = ExecutorConfig(
            page_size=self.page_size,
            retry=self.retry,
            inter_page_delay_seconds=self.inter_page_delay_seconds,
            mode=mode,
        )
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **changes) if changes else config


PRODUCTION_PROFILE = EnvironmentProfile(page_size=25, max_retries=5, inter_page_delay_seconds=1.0)
DEFAULT_PROFILE = EnvironmentProfile(page_size=50, max_retries=3, inter_page_delay_seconds=0.5)


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_DATA_DIR",
    "DEFAULT_PROFILE",
    "DEFAULT_PRODUCTION_ENVIRONMENTS",
    "PRODUCTION_PROFILE",
    "EnvironmentProfile",
    "ProjectMapping",
    "ResolvedEnvironment",
    "load_project_mapping",
]
