"""Project-aware configuration loading for vcsync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

CONFIG_SUBDIR = ".vcsync"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

ENV_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "VCSYNC_BASE_URL": ("update", "base_url"),
    "VCSYNC_LOG_LEVEL": ("logging", "level"),
}


CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "WARNING"},
            "structured": {"type": bool, "default": False},
        },
        "default": {},
    },
    "cache": {
        "type": dict,
        "schema": {
            "tracked_dirs": {"type": list, "default_factory": list},
            "blacklist": {"type": list, "default_factory": list},
            "manifest_path": {"type": str, "default": ".vcsync/manifest.json"},
        },
        "default": {},
    },
    "update": {
        "type": dict,
        "schema": {
            "base_url": {"type": str, "default": ""},
            "manifest_path": {"type": str, "default": ".vcsync/manifest.json"},
            "local_manifest_path": {"type": str, "default": ".vcsync/local_manifest.json"},
            "temp_manifest_path": {"type": str, "default": ".vcsync/remote_manifest.tmp.json"},
            "timeout": {"type": (int, float), "default": 30.0},
            "retries": {"type": int, "default": 2},
            "backoff": {"type": (int, float), "default": 0.5},
            "max_workers": {"type": int, "default": 4},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data vcsync needs for one run."""

    root_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None


def load_runtime_configuration(
    root_dir: Path,
    env: Optional[Mapping[str, str]] = None,
) -> ConfigurationBundle:
    """Load schema defaults, project overrides and environment overrides."""

    env_source = os.environ if env is None else env
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []
    merged: Dict[str, Any] = {}
    status: ConfigurationStatus = "ready"

    if not root_dir.exists():
        diagnostics.append(Diagnostic("error", f"Project root '{root_dir}' does not exist."))
        status = "missing"
    elif not root_dir.is_dir():
        diagnostics.append(Diagnostic("error", f"Project root '{root_dir}' is not a directory."))
        status = "invalid"
    else:
        merged, files_loaded = _load_directory_configs(root_dir / CONFIG_SUBDIR, diagnostics)

    _apply_env_overrides(merged, env_source)
    _validate_section(merged, CONFIG_SCHEMA, "config", diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        root_dir=root_dir,
        status=status,
        merged=merged,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.is_dir():
        if directory.exists():
            diagnostics.append(
                Diagnostic("error", f"Configuration path '{directory}' is not a directory.", directory)
            )
        else:
            diagnostics.append(
                Diagnostic("info", f"No configuration directory found at '{directory}'.", directory)
            )
        return data, loaded_files

    for yaml_file in sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml")):
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(Diagnostic("error", f"Failed to parse '{yaml_file}': {exc}", yaml_file))
            continue

        if content is not None and not isinstance(content, Mapping):
            diagnostics.append(
                Diagnostic(
                    "warning",
                    f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                    yaml_file,
                )
            )
            continue

        _deep_merge_dicts(data, content or {})
        loaded_files.append(yaml_file)

    return data, loaded_files


def _apply_env_overrides(config: Dict[str, Any], env: Mapping[str, str]) -> None:
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        target = config.setdefault(section, {})
        if isinstance(target, MutableMapping):
            target[key] = value


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if isinstance(dest.get(key), MutableMapping) and isinstance(value, Mapping):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec:
        return spec["default_factory"]()
    return deepcopy(spec["default"])


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    for key in target:
        if key not in schema:
            diagnostics.append(Diagnostic("warning", f"Unknown configuration key '{path}.{key}'."))

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        expected_type = spec["type"]
        if key not in target:
            target[key] = _default_from_spec(spec)
        value = target[key]

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(Diagnostic("error", f"'{child_path}' must be a mapping."))
                target[key] = _default_from_spec(spec)
            _validate_section(target[key], spec["schema"], child_path, diagnostics)
        elif expected_type is list:
            target[key] = _string_list(value, child_path, diagnostics)
        elif not isinstance(value, expected_type) or (
            isinstance(value, bool) and expected_type is not bool
        ):
            if isinstance(expected_type, tuple):
                type_name = ", ".join(t.__name__ for t in expected_type)
            else:
                type_name = expected_type.__name__
            diagnostics.append(Diagnostic("error", f"'{child_path}' must be of type {type_name}."))
            target[key] = _default_from_spec(spec)


def _string_list(value: Any, path: str, diagnostics: List[Diagnostic]) -> List[str]:
    """Keep the string items of a path list, reporting everything else."""
    if not isinstance(value, list):
        diagnostics.append(Diagnostic("error", f"'{path}' must be a list."))
        return []
    kept: List[str] = []
    for idx, item in enumerate(value):
        if isinstance(item, str):
            kept.append(item)
        else:
            diagnostics.append(Diagnostic("error", f"'{path}[{idx}]' must be of type str."))
    return kept


__all__ = [
    "CONFIG_SUBDIR",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "Diagnostic",
    "load_runtime_configuration",
]
