# config.py
# TOML configuration file plus .env / environment overrides.
#
# Search order for overrides: process environment, then .env files loaded by
# python-dotenv (existing variables are never replaced).

import os
import tomllib
from pathlib import Path

import typer
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from shell_planner.llm import DEFAULT_SYSTEM_PROMPT, SYSTEM_PROMPT_FILENAME

APP_NAME = "shell-planner"
CONFIG_FILENAME = "config.toml"

DEFAULT_CONFIG_TOML = """\
ollama_host = "http://localhost:11434"

[model]
name = "phi4-mini:latest"
temperature = 0.7
max_tokens = 1000

[advanced]
qwen_formatting = true

[execution]
# Seconds before a running command is killed. Unset means wait forever.
# command_timeout = 600
"""


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or parsed."""


class ModelConfig(BaseModel):
    name: str = "phi4-mini:latest"
    temperature: float | None = 0.7
    max_tokens: int | None = 1000


class AdvancedConfig(BaseModel):
    qwen_formatting: bool = True


class ExecutionConfig(BaseModel):
    command_timeout: float | None = Field(default=None, gt=0)


class AppConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    ollama_host: str = "http://localhost:11434"
    advanced: AdvancedConfig = Field(default_factory=AdvancedConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    debug: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "AppConfig":
        expanded = Path(path).expanduser()
        try:
            with expanded.open("rb") as fh:
                data = tomllib.load(fh)
        except OSError as exc:
            raise ConfigError(f"Failed to read config file: {path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Failed to parse TOML from config file: {path}: {exc}") from exc

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid config file {path}:\n{exc}") from exc


def default_path() -> Path:
    return Path(typer.get_app_dir(APP_NAME)) / CONFIG_FILENAME


def generate_default_config(path: Path) -> None:
    """Write the default config and system prompt next to it, keeping existing files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_text(DEFAULT_CONFIG_TOML, encoding="utf-8")
    prompt_path = path.parent / SYSTEM_PROMPT_FILENAME
    if not prompt_path.exists():
        prompt_path.write_text(DEFAULT_SYSTEM_PROMPT, encoding="utf-8")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def load_config(path: Path | None = None) -> tuple[AppConfig, Path]:
    """
    Load the config file (generating defaults when the default file is missing)
    and apply environment overrides.

    Returns the config and the directory holding it, where the system prompt lives.
    """
    load_dotenv()

    config_path = Path(path).expanduser() if path is not None else default_path()
    if path is None and not config_path.exists():
        generate_default_config(config_path)

    config = AppConfig.from_file(config_path)

    host = os.environ.get("OLLAMA_HOST")
    if host:
        if "://" not in host:
            host = f"http://{host}"
        config.ollama_host = host
    model = os.environ.get("SHELL_PLANNER_MODEL")
    if model:
        config.model.name = model
    if _env_flag("SHELL_PLANNER_DEBUG"):
        config.debug = True

    return config, config_path.parent
