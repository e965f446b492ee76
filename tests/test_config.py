from __future__ import annotations

import pytest
from pydantic import ValidationError

from forgeloop.core.config import ModelSettings, Settings, get_settings, load_settings
from forgeloop.core.errors import ModelNotFoundError


def test_load_settings_from_yaml(tmp_path):
    path = tmp_path / "forgeloop.yaml"
    path.write_text(
        "environment: test\n"
        "default_model: smart\n"
        "engine:\n"
        "  max_trials: 3\n"
        "  default_overwrite: exact\n"
        "search:\n"
        "  exploration_constant: 0.5\n"
        "models:\n"
        "  local:\n"
        "    type: ollama\n"
        "    model: llama3.2\n"
        "    base_url: http://localhost:11434/v1\n"
        "  smart: local\n",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.environment == "test"
    assert settings.engine.max_trials == 3
    assert settings.engine.default_overwrite == "exact"
    assert settings.search.exploration_constant == 0.5
    name, model = settings.resolve_model()
    assert name == "local"
    assert model.model == "llama3.2"


def test_load_settings_rejects_non_mapping(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("- not a mapping\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_settings(path)


def test_resolve_model_reports_missing_and_cycles():
    settings = Settings(
        models={
            "default": ModelSettings(type="openai", model="gpt"),
            "a": "b",
            "b": "a",
            "dangling": "nowhere",
        }
    )

    assert settings.resolve_model("default")[0] == "default"
    with pytest.raises(ModelNotFoundError, match="cycle"):
        settings.resolve_model("a")
    with pytest.raises(ModelNotFoundError):
        settings.resolve_model("dangling")


def test_default_model_must_exist():
    with pytest.raises(ValidationError):
        Settings(default_model="ghost")


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("FORGELOOP_ENGINE__MAX_TRIALS", "7")
    monkeypatch.setenv("FORGELOOP_ARTIFACTS__BACKEND", "null")

    settings = get_settings({"environment": "test"})

    assert settings.engine.max_trials == 7
    assert settings.artifacts.backend == "null"
