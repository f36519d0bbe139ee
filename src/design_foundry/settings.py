"""Explorer settings loader.

Settings come from an optional YAML or JSON file, then ``DESIGN_FOUNDRY_*``
environment variables override individual fields:

    DESIGN_FOUNDRY_CACHE_DIR=/var/cache/designs
    DESIGN_FOUNDRY_POOL=process
    DESIGN_FOUNDRY_MAX_WORKERS=8
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from design_foundry.diagnosis.pool import PoolKind
from design_foundry.diagnosis.spec import DEFAULT_CACHE_VERSION
from design_foundry.errors import SettingsError
from design_foundry.params.expand import DEFAULT_MAX_DESIGN_POINTS
from design_foundry.params.sequence import DEFAULT_MAX_SEQUENCE_LENGTH

ENV_PREFIX = "DESIGN_FOUNDRY_"
DEFAULT_CACHE_DIR = Path(".design_foundry_cache")


class ExplorerSettings(BaseModel):
    """Runtime settings for a hosting process."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cache_dir: Path = DEFAULT_CACHE_DIR
    pool: PoolKind = "thread"
    max_workers: int | None = Field(None, ge=1, description="Cap on worker count; None uses all cores")
    max_design_points: int = Field(DEFAULT_MAX_DESIGN_POINTS, ge=1)
    max_sequence_length: int = Field(DEFAULT_MAX_SEQUENCE_LENGTH, ge=1)
    default_cache_version: str = Field(DEFAULT_CACHE_VERSION, min_length=1)
    lock_timeout_sec: float | None = Field(None, gt=0)


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ExplorerSettings:
    """Load settings from a file and the environment.

    Args:
        path: YAML or JSON settings file. Defaults are used when None.
        env: Environment mapping. Defaults to ``os.environ``.

    Returns:
        Validated ExplorerSettings.

    Raises:
        SettingsError: If the file is unreadable or any value is invalid.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data = _read_settings_file(path)

    environ = os.environ if env is None else env
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        field_name = name[len(ENV_PREFIX):].lower()
        if field_name not in ExplorerSettings.model_fields:
            raise SettingsError(f"Unknown settings variable: {name}")
        data[field_name] = value if value != "" else None

    try:
        return ExplorerSettings.model_validate(data)
    except ValidationError as e:
        raise SettingsError(f"Invalid settings: {e}") from e


def _read_settings_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsError(f"Cannot read settings file {path}: {e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SettingsError(f"Invalid settings in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsError(f"Settings must be a mapping, got {type(data).__name__}")
    return data
