from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ModelNotFoundError

OverwritePolicyName = Literal["force", "skip", "fail", "timestamp", "exact"]


class EngineSettings(BaseModel):
    max_trials: int = Field(5, ge=1, description="Generation attempts before giving up.")
    max_context_tokens: int = Field(
        64_000,
        ge=1,
        description="Estimated token budget; larger contexts are handed to the reducer before sending.",
    )
    max_tool_rounds: int = Field(1, ge=0, description="Tool rounds offered to the model per generation.")
    default_overwrite: OverwritePolicyName = Field("fail", description="Overwrite policy used when none is given.")
    error_excerpt_chars: int = Field(400, ge=16, description="Truncation length for error text fed back or logged.")
    output_prefix: str = Field("llm", min_length=1, description="Prefix for generated artifact names.")


class SearchSettings(BaseModel):
    exploration_constant: float = Field(1.0, ge=0.0, description="UCB1 exploration constant C.")
    new_child_weight: float = Field(
        2.0,
        gt=0.0,
        description="Numerator of the new-child heuristic weight / (children + 1).",
    )
    seed: str | None = Field(
        default=None,
        description="Seed for expansion draws; defaults to the exploration constant for reproducible runs.",
    )


class ArtifactSettings(BaseModel):
    backend: Literal["memory", "filesystem", "null"] = "memory"
    root_path: Path = Field(Path("./artifacts"), description="Root directory for the filesystem backend.")


class ModelSettings(BaseModel):
    type: str = Field(..., min_length=1, description="Registry tag used to construct the client.")
    model: str = Field(..., min_length=1)
    base_url: str | None = Field(default=None, description="API root, e.g. http://localhost:11434/v1")
    api_key: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    timeout_seconds: float = Field(120.0, gt=0.0)
    headers: dict[str, str] = Field(default_factory=dict)


class ObservabilitySettings(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = True


def _default_models() -> dict[str, ModelSettings | str]:
    return {
        "default": ModelSettings(type="ollama", model="llama3.2", base_url="http://localhost:11434/v1"),
    }


class Settings(BaseSettings):
    environment: Literal["development", "staging", "production", "test"] = "development"
    engine: EngineSettings = Field(default_factory=EngineSettings)  # type: ignore[arg-type]
    search: SearchSettings = Field(default_factory=SearchSettings)  # type: ignore[arg-type]
    artifacts: ArtifactSettings = Field(default_factory=ArtifactSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]
    models: dict[str, ModelSettings | str] = Field(default_factory=_default_models)
    default_model: str = Field("default", min_length=1, description="Model name used when none is requested.")

    model_config = SettingsConfigDict(
        env_prefix="FORGELOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_default_model(self) -> "Settings":
        if self.default_model not in self.models:
            raise ValueError(f"Default model '{self.default_model}' not found in models")
        return self

    def resolve_model(self, name: str | None = None) -> tuple[str, ModelSettings]:
        """Follow aliases until a concrete model entry is reached."""
        requested = name or self.default_model
        current = requested
        seen: set[str] = set()
        while True:
            entry = self.models.get(current)
            if entry is None:
                raise ModelNotFoundError(f"Model not found: '{requested}'")
            if isinstance(entry, ModelSettings):
                return current, entry
            if current in seen:
                raise ModelNotFoundError(f"Model alias cycle while resolving '{requested}'")
            seen.add(current)
            current = entry


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()


def load_settings(path: str | Path) -> Settings:
    """Load settings from a YAML file; environment variables still fill unspecified fields."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration file '{file_path}' must contain a mapping")
    return Settings(**dict(data))
