"""
Unit tests for project mapping and environment profiles.
"""

import json
from pathlib import Path

import pytest

from docshift.config import (
    DEFAULT_PROFILE,
    PRODUCTION_PROFILE,
    EnvironmentProfile,
    ProjectMapping,
    ResolvedEnvironment,
    load_project_mapping,
)
from docshift.exceptions import (
    ConfigurationError,
    MalformedConfigError,
    UnresolvedEnvironmentError,
)
from docshift.models import ExecutionMode

MAPPING = {
    "projects": {
        "default": "tradeya-dev",
        "staging": "tradeya-staging",
        "production": "tradeya-prod",
    },
    "databases": {"tradeya-prod": "/var/lib/docshift/tradeya-prod.sqlite3"},
}


@pytest.fixture
def mapping() -> ProjectMapping:
    return ProjectMapping.model_validate(MAPPING)


class TestResolve:
    """Tests for ProjectMapping.resolve."""

    def test_by_environment_name(self, mapping: ProjectMapping) -> None:
        resolved = mapping.resolve("staging")

        assert resolved == ResolvedEnvironment(
            environment="staging",
            project_id="tradeya-staging",
            database=str(Path(".docshift") / "tradeya-staging.sqlite3"),
            is_production=False,
        )

    def test_by_project_id(self, mapping: ProjectMapping) -> None:
        resolved = mapping.resolve("tradeya-prod")

        assert resolved.environment == "production"
        assert resolved.database == "/var/lib/docshift/tradeya-prod.sqlite3"
        assert resolved.is_production

    def test_unknown_selector(self, mapping: ProjectMapping) -> None:
        with pytest.raises(UnresolvedEnvironmentError) as exc_info:
            mapping.resolve("qa")

        assert exc_info.value.environment == "qa"
        assert exc_info.value.available == ["default", "production", "staging"]

    def test_custom_production_environments(self) -> None:
        mapping = ProjectMapping.model_validate(
            {**MAPPING, "productionEnvironments": ["staging"]}
        )
        assert mapping.resolve("staging").is_production
        assert not mapping.resolve("production").is_production


class TestLoadProjectMapping:
    """Tests for load_project_mapping."""

    def test_loads_file(self, tmp_path: Path) -> None:
        path = tmp_path / ".docshiftrc"
        path.write_text(json.dumps(MAPPING))

        assert load_project_mapping(path).projects["staging"] == "tradeya-staging"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_project_mapping(tmp_path / ".docshiftrc")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / ".docshiftrc"
        path.write_text("{projects:")
        with pytest.raises(MalformedConfigError, match="invalid JSON"):
            load_project_mapping(path)

    @pytest.mark.parametrize(
        "data",
        [
            {"projects": {}},
            {"projects": {"staging": " "}},
            {"projects": {"staging": "x"}, "region": "eu"},
        ],
    )
    def test_invalid_mapping(self, tmp_path: Path, data: dict) -> None:
        path = tmp_path / ".docshiftrc"
        path.write_text(json.dumps(data))
        with pytest.raises(MalformedConfigError):
            load_project_mapping(path)


class TestEnvironmentProfile:
    """Tests for EnvironmentProfile."""

    def test_production_is_conservative(self, mapping: ProjectMapping) -> None:
        assert EnvironmentProfile.for_environment(mapping.resolve("production")) is (
            PRODUCTION_PROFILE
        )
        assert EnvironmentProfile.for_environment(mapping.resolve("staging")) is DEFAULT_PROFILE
        assert PRODUCTION_PROFILE.page_size < DEFAULT_PROFILE.page_size
        assert PRODUCTION_PROFILE.max_retries > DEFAULT_PROFILE.max_retries

    def test_executor_config(self) -> None:
        config = PRODUCTION_PROFILE.executor_config(ExecutionMode.DRY_RUN)

        assert config.page_size == 25
        assert config.retry.max_retries == 5
        assert config.inter_page_delay_seconds == 1.0
        assert config.mode is ExecutionMode.DRY_RUN

    def test_overrides_ignore_none(self) -> None:
        config = DEFAULT_PROFILE.executor_config(
            ExecutionMode.EXECUTE, page_size=10, workers=None, start_after="trade-0009"
        )
        assert config.page_size == 10
        assert config.workers == 1
        assert config.start_after == "trade-0009"

    def test_overrides_are_validated(self) -> None:
        with pytest.raises(ValueError):
            DEFAULT_PROFILE.executor_config(ExecutionMode.EXECUTE, page_size=1000)
