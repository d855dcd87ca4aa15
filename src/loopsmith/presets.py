"""Named workflow presets loaded from YAML.

Built-in presets live in ``presets.yaml`` next to this module. A user file
at ``~/.loopsmith/presets.yaml`` is merged on top, followed by the project file
``.loopsmith/presets.yaml`` in the working directory when present.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from loopsmith.file_io import STATE_DIRNAME

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "presets.yaml"
PRESETS_FILENAME = "presets.yaml"
_USER_OVERRIDE = Path.home() / STATE_DIRNAME / PRESETS_FILENAME


class Preset(BaseModel):
    """Config defaults applied when a preset is selected."""

    name: str
    description: str = ""
    max_iterations: int | None = None
    validate_changes: bool | None = None
    commit: bool | None = None
    completion_token: str | None = None
    require_exit_signal: bool | None = None
    circuit_breaker_failures: int | None = None
    circuit_breaker_errors: int | None = None
    rate_limit: int | None = None
    prompt_prefix: str | None = None

    def overrides(self) -> dict[str, Any]:
        """Return only the config fields this preset sets."""
        return self.model_dump(exclude={"name", "description"}, exclude_none=True)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict when unreadable."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def project_presets_path(cwd: str | Path) -> Path:
    return Path(cwd) / STATE_DIRNAME / PRESETS_FILENAME


def load_presets(
    extra_path: Path | None = None,
    *,
    user_path: Path | None = None,
) -> dict[str, Preset]:
    """Return all presets keyed by name."""
    data = _load_yaml(_BUILTIN_YAML)
    for path in (user_path or _USER_OVERRIDE, extra_path):
        if path is not None and path.exists():
            override = _load_yaml(path)
            if override:
                data = _deep_merge(data, override)
                logger.info("Loaded preset overrides from %s", path)

    presets: dict[str, Preset] = {}
    for name, entry in (data.get("presets") or {}).items():
        if not isinstance(entry, dict):
            continue
        fields = dict(entry)
        if "validate" in fields:
            fields["validate_changes"] = fields.pop("validate")
        try:
            presets[name] = Preset(name=name, **fields)
        except ValidationError as exc:
            logger.warning("Ignoring invalid preset %r: %s", name, exc)
    return presets


def get_preset(name: str, **kwargs: Any) -> Preset:
    """Return the named preset or raise :class:`KeyError` listing the choices."""
    presets = load_presets(**kwargs)
    if name not in presets:
        raise KeyError(f"Unknown preset '{name}'. Available: {', '.join(sorted(presets)) or '(none)'}")
    return presets[name]
