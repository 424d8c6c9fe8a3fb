"""Configuration loading for para.

Configuration lives in a JSON file (``para-config.json`` by default)::

    {
      "fileSync": {"sourceDir": "./src", "globPattern": "**/*.py"},
      "assistant": {"model": "gpt-4o-mini", "generateFiles": {"outDir": "./out"}},
      "vectorStoreName": "My Project Store"
    }

User values are deep-merged over the defaults below. String values may
reference environment variables as ``${VAR}`` or ``${VAR:-default}``.
"""

import copy
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from para.assistant.instructions import DEFAULT_INSTRUCTIONS
from para.exceptions import ConfigurationError

__all__ = [
    "ParaConfig",
    "FileSyncConfig",
    "AssistantConfig",
    "DEFAULT_CONFIG_PATH",
    "load_config",
    "deep_merge",
    "expand_env_vars",
]

DEFAULT_CONFIG_PATH = Path("./para-config.json")

DEFAULT_GLOB_PATTERN = (
    "**/*.{c,cpp,cs,css,doc,docx,go,html,java,js,json,md,pdf,php,pptx,py,rb,sh,tex,ts,txt}"
)
DEFAULT_VECTOR_STORE_NAME = "Programming Assistant Vector Store"

DEFAULTS: dict[str, Any] = {
    "assistant": {
        "name": "programming assistant",
        "description": "Expert programming assistant",
        "instructions": DEFAULT_INSTRUCTIONS,
        "model": "gpt-4o-mini",
        "generateFiles": False,
        "ignorePatterns": [],
    },
    "fileSync": {
        "globPattern": DEFAULT_GLOB_PATTERN,
        "ignorePatterns": [],
    },
    "vectorStoreName": DEFAULT_VECTOR_STORE_NAME,
}

# Pattern to match ${VAR} or ${VAR:-default} syntax
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in strings, lists and dicts."""
    if isinstance(value, str):

        def replacer(match: re.Match) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            return match.group(2) if match.group(2) is not None else ""

        return ENV_VAR_PATTERN.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def deep_merge(base: dict, override: dict) -> dict:
    """Return ``base`` with ``override`` merged in; nested dicts merge recursively."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class FileSyncConfig:
    """Which files of which directory are mirrored into the vector store."""

    source_dir: Path
    glob_pattern: str = DEFAULT_GLOB_PATTERN
    ignore_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path) -> "FileSyncConfig":
        source_dir = data.get("sourceDir")
        if not source_dir:
            raise ConfigurationError("fileSync.sourceDir must be defined in para-config.json")

        path = Path(source_dir).expanduser()
        if not path.is_absolute():
            path = base_dir / path

        return cls(
            source_dir=path.resolve(),
            glob_pattern=data.get("globPattern") or DEFAULT_GLOB_PATTERN,
            ignore_patterns=list(data.get("ignorePatterns") or []),
        )


@dataclass
class AssistantConfig:
    """Settings for the OpenAI assistant."""

    name: str
    description: str
    instructions: str
    model: str
    generate_files_dir: Path | None = None
    ignore_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path) -> "AssistantConfig":
        generate = data.get("generateFiles")
        out_dir = None
        if isinstance(generate, dict):
            if not generate.get("outDir"):
                raise ConfigurationError("assistant.generateFiles.outDir must be defined")
            out_dir = Path(generate["outDir"]).expanduser()
            if not out_dir.is_absolute():
                out_dir = base_dir / out_dir
        elif generate not in (None, False):
            raise ConfigurationError(
                "assistant.generateFiles must be false or an object with outDir"
            )

        return cls(
            name=data["name"],
            description=data["description"],
            instructions=data["instructions"],
            model=data["model"],
            generate_files_dir=out_dir,
            ignore_patterns=list(data.get("ignorePatterns") or []),
        )


@dataclass
class ParaConfig:
    """Complete para configuration."""

    file_sync: FileSyncConfig
    assistant: AssistantConfig
    vector_store_name: str = DEFAULT_VECTOR_STORE_NAME

    @property
    def ignore_patterns(self) -> list[str]:
        """Ignore patterns from both the fileSync and assistant sections."""
        patterns = list(self.file_sync.ignore_patterns)
        patterns.extend(p for p in self.assistant.ignore_patterns if p not in patterns)
        return patterns

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "ParaConfig":
        """Build a config from user data merged over the defaults.

        Args:
            data: User configuration (camelCase keys as in the JSON file)
            base_dir: Directory relative paths are resolved against

        Raises:
            ConfigurationError: If a required value is missing or invalid
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a JSON object")
        if not isinstance(data.get("fileSync"), dict):
            raise ConfigurationError("fileSync.sourceDir must be defined in para-config.json")

        base_dir = Path(base_dir) if base_dir else Path.cwd()
        merged = deep_merge(DEFAULTS, expand_env_vars(data))

        return cls(
            file_sync=FileSyncConfig.from_dict(merged["fileSync"], base_dir),
            assistant=AssistantConfig.from_dict(merged["assistant"], base_dir),
            vector_store_name=merged.get("vectorStoreName") or DEFAULT_VECTOR_STORE_NAME,
        )

    @classmethod
    def from_file(cls, path: Path) -> "ParaConfig":
        """Load configuration from a JSON file.

        Relative paths inside the file are resolved against the current
        working directory, matching how the file is usually referenced.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {path}")
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {path}: {e}") from e

        return cls.from_dict(data)


def load_config(path: Path | str | None = None) -> ParaConfig:
    """Load and validate the configuration used by the CLI.

    Raises:
        ConfigurationError: If the config is invalid or sourceDir does not exist
    """
    config = ParaConfig.from_file(Path(path) if path else DEFAULT_CONFIG_PATH)

    if not config.file_sync.source_dir.is_dir():
        raise ConfigurationError(
            f"fileSync.sourceDir is not a directory: {config.file_sync.source_dir}"
        )
    return config
