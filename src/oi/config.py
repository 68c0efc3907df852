"""Configuration for oi.

Settings discovery (first match wins):
  1. ``--config`` flag
  2. ``$XDG_CONFIG_HOME/oi/oi.yml``
  3. ``~/.config/oi/oi.yml`` (written with defaults when missing)

Values from the file are overridden by ``OI_*`` environment variables,
which are in turn overridden by command-line flags.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from oi.errors import SetupError
from oi.llm.ollama import DEFAULT_BASE_URL

_logger = logging.getLogger(__name__)

DEFAULT_MARKDOWN_FORMAT_TEXT = "Format the response as markdown without enclosing backticks."
DEFAULT_JSON_FORMAT_TEXT = "Format the response as json without enclosing backticks."


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

class ModelSpec(BaseModel):
    aliases: list[str] = Field(default_factory=list)
    max_input_chars: int = 0  # 0 = use the global limit
    fallback: str = ""


class APISpec(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    # An empty mapping accepts any model name the server knows
    models: dict[str, ModelSpec] = Field(default_factory=dict)


class Config(BaseSettings):
    """Top-level settings, mapped to the YAML settings file."""

    model_config = SettingsConfigDict(env_prefix="OI_", extra="ignore")

    default_api: str = "ollama"
    default_model: str = ""
    format: bool = False
    format_text: dict[str, str] = Field(
        default_factory=lambda: {
            "markdown": DEFAULT_MARKDOWN_FORMAT_TEXT,
            "json": DEFAULT_JSON_FORMAT_TEXT,
        }
    )
    format_as: str = "markdown"
    role: str = ""
    roles: dict[str, list[str]] = Field(default_factory=lambda: {"default": []})
    raw: bool = False
    quiet: bool = False

    # Sampling; negative values (and max_tokens == 0) leave the backend default
    max_tokens: int = 0
    temp: float = 1.0
    topp: float = 1.0
    topk: int = 50
    stop: list[str] = Field(default_factory=list)

    max_input_chars: int = 12250
    no_limit: bool = False
    cache_path: str = ""
    no_cache: bool = False
    include_prompt: int = 0
    include_prompt_args: bool = False
    max_retries: int = 5
    word_wrap: int = 80
    status_text: str = "Generating"
    http_proxy: str = ""
    request_timeout: float = 300
    tools: list[str] = Field(default_factory=list)
    tool_timeout: float = 15
    apis: dict[str, APISpec] = Field(default_factory=lambda: {"ollama": APISpec()})

    @field_validator("format_text", mode="before")
    @classmethod
    def _single_format_text(cls, value: Any) -> Any:
        # A plain string configures the markdown format only
        if isinstance(value, str):
            return {"markdown": value}
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values read from the settings file
        return (env_settings, init_settings)

    @property
    def temperature(self) -> float | None:
        return self.temp if self.temp >= 0 else None

    @property
    def top_p(self) -> float | None:
        return self.topp if self.topp >= 0 else None

    @property
    def top_k(self) -> int | None:
        return self.topk if self.topk >= 0 else None

    @property
    def max_tokens_or_none(self) -> int | None:
        return self.max_tokens if self.max_tokens > 0 else None

    @property
    def conversations_dir(self) -> Path:
        return Path(self.cache_path).expanduser() / "conversations"


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def settings_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "oi" / "oi.yml"


def data_path() -> Path:
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / "oi"


# ---------------------------------------------------------------------------
# Key translation between the YAML file (dashes) and the models (underscores)
# ---------------------------------------------------------------------------

def _underscored(raw: dict[str, Any]) -> dict[str, Any]:
    return {str(k).replace("-", "_"): v for k, v in raw.items()}


def _normalize(raw: dict[str, Any]) -> dict[str, Any]:
    """Translate dashed keys, leaving user-chosen names (APIs, models, roles) alone."""
    data = _underscored(raw)
    apis = data.get("apis")
    if isinstance(apis, dict):
        normalized: dict[str, Any] = {}
        for name, api in apis.items():
            if not isinstance(api, dict):
                normalized[name] = api
                continue
            api = _underscored(api)
            models = api.get("models")
            if isinstance(models, dict):
                api["models"] = {
                    m: _underscored(spec) if isinstance(spec, dict) else (spec or {})
                    for m, spec in models.items()
                }
            normalized[name] = api
        data["apis"] = normalized
    return data


def _dashed(data: dict[str, Any]) -> dict[str, Any]:
    out = {k.replace("_", "-"): v for k, v in data.items()}
    for api in out.get("apis", {}).values():
        api["base-url"] = api.pop("base_url")
        for name, spec in list(api["models"].items()):
            api["models"][name] = {k.replace("_", "-"): v for k, v in spec.items()}
    return out


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def write_default_config(path: Path) -> None:
    """Write a settings file holding the built-in defaults."""
    defaults = Config.model_construct().model_dump()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(_dashed(defaults), f, sort_keys=False)
    _logger.info("Wrote default settings to %s", path)


def load_config(config_path: str | Path | None = None) -> tuple[Config, Path]:
    """Load settings from YAML and the environment.

    Returns ``(config, resolved_path)``.  A missing default settings file
    is created; a missing explicit ``config_path`` is an error.
    """
    path = Path(config_path).expanduser() if config_path else settings_path()
    if not path.exists():
        if config_path is not None:
            raise SetupError(
                f"Config file not found: {path}",
                reason="Could not read settings file.",
            )
        try:
            write_default_config(path)
        except OSError as e:
            raise SetupError(str(e), reason="Could not create settings file.") from e

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise SetupError(str(e), reason="Could not parse settings file.") from e
    if not isinstance(raw, dict):
        raise SetupError(
            f"{path}: expected a mapping at the top level",
            reason="Could not parse settings file.",
        )

    try:
        config = Config(**_normalize(raw))
    except ValidationError as e:
        raise SetupError(str(e), reason="Could not parse settings file.") from e

    if not config.cache_path:
        config = config.model_copy(update={"cache_path": str(data_path())})
    return config, path.resolve()
