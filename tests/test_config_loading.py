"""Tests for configuration loading system."""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from slack_ingest.config.settings import (
    Settings,
    deep_merge,
    load_all_configs,
    load_schema,
    validate_config_section,
)


class StubLogger:
    """Capture structured logging calls."""

    def __init__(self) -> None:
        self.debug_calls: list[tuple[str, dict[str, Any]]] = []
        self.info_calls: list[tuple[str, dict[str, Any]]] = []
        self.warning_calls: list[tuple[str, dict[str, Any]]] = []

    def debug(self, event: str, **kwargs: Any) -> None:
        self.debug_calls.append((event, kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self.info_calls.append((event, kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self.warning_calls.append((event, kwargs))


def _write_schema(config_dir: Path, name: str, schema: dict[str, Any]) -> None:
    schema_dir = config_dir / "schemas"
    schema_dir.mkdir(parents=True, exist_ok=True)
    with open(schema_dir / f"{name}.schema.json", "w") as f:
        json.dump(schema, f)


def test_deep_merge_nested() -> None:
    """Nested dictionaries are merged key by key."""
    base = {"backfill": {"default_page_size": 100, "max_page_size": 200}}
    override = {"backfill": {"max_page_size": 150}}

    assert deep_merge(base, override) == {
        "backfill": {"default_page_size": 100, "max_page_size": 150}
    }


def test_deep_merge_lists_replaced() -> None:
    """Test that lists are replaced, not merged."""
    assert deep_merge({"items": [1, 2, 3]}, {"items": [4, 5]}) == {"items": [4, 5]}


def test_load_schema_existing(tmp_path: Path) -> None:
    schema_content = {"type": "object", "properties": {"test": {"type": "string"}}}
    _write_schema(tmp_path, "test", schema_content)

    assert load_schema("test", tmp_path) == schema_content


def test_load_schema_missing(tmp_path: Path) -> None:
    assert load_schema("nonexistent_schema_xyz", tmp_path) == {}


def test_validate_config_section_invalid(tmp_path: Path) -> None:
    _write_schema(
        tmp_path,
        "test",
        {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        },
    )

    validate_config_section({"name": "ok"}, "test", tmp_path)
    with pytest.raises(ValueError, match="Config validation failed"):
        validate_config_section({"wrong_field": "x"}, "test", tmp_path)


def test_repository_config_matches_its_schema() -> None:
    """config/main.yaml shipped with the repo validates against main.schema.json."""
    config = load_all_configs("config")

    assert config["backfill"]["max_page_size"] == 200
    assert config["retry"]["max_attempts"] == 3


def test_load_all_configs_no_config_directory(tmp_path: Path) -> None:
    assert load_all_configs(tmp_path / "missing") == {}


def test_load_all_configs_merge(tmp_path: Path) -> None:
    with open(tmp_path / "main.yaml", "w") as f:
        yaml.dump({"backfill": {"default_page_size": 100}}, f)
    with open(tmp_path / "local.yaml", "w") as f:
        yaml.dump({"backfill": {"default_delay_seconds": 2.0}}, f)

    config = load_all_configs(tmp_path)

    assert config["backfill"] == {"default_page_size": 100, "default_delay_seconds": 2.0}


def test_load_all_configs_logs_structured_warning(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Config loader should emit structured warnings when files fail to load."""

    logger_stub = StubLogger()
    monkeypatch.setattr("slack_ingest.config.settings.logger", logger_stub)
    (tmp_path / "main.yaml").write_text("invalid: [yaml", encoding="utf-8")

    load_all_configs(tmp_path)

    event, payload = logger_stub.warning_calls[0]
    assert event == "config_file_load_failed"
    assert payload["path"].endswith("main.yaml")
    assert "error" in payload


def test_settings_apply_yaml_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    with open(config_dir / "main.yaml", "w") as f:
        yaml.dump(
            {
                "database": {"type": "sqlite", "path": "custom.db"},
                "backfill": {"max_page_size": 150, "min_delay_seconds": 0.25},
                "retry": {"max_attempts": 5},
                "slack": {"signature_tolerance_seconds": 60},
            },
            f,
        )
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.db_path == "custom.db"
    assert settings.backfill_max_page_size == 150
    assert settings.backfill_min_delay_seconds == 0.25
    assert settings.backfill_default_page_size == 100
    assert settings.retry_max_attempts == 5
    assert settings.webhook_signature_tolerance_seconds == 60


def test_environment_overrides_yaml(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    with open(config_dir / "main.yaml", "w") as f:
        yaml.dump({"backfill": {"max_page_size": 150}}, f)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BACKFILL_MAX_PAGE_SIZE", "120")

    assert Settings().backfill_max_page_size == 120


def test_blank_secret_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SLACK_BOT_TOKEN", "   ")

    with pytest.raises(ValidationError):
        Settings()


def test_secrets_are_masked(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "shh")

    settings = Settings()

    assert settings.slack_signing_secret is not None
    assert settings.slack_signing_secret.get_secret_value() == "shh"
    assert "shh" not in repr(settings)
