"""Cairn configuration management.

Loads configuration from .cairn/config.yaml with sensible defaults.
All settings can be overridden via environment variables (CAIRN_*).

Config locations (in priority order):
1. Explicit path passed to load_config()
2. .cairn/config.yaml (workspace-local)
3. ~/.cairn/config.yaml (user-global)
4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WorkspaceConfig:
    """Where units live and how their manifests are read."""

    scan_dirs: dict[str, str] = field(
        default_factory=lambda: {
            "packages": "package",
            "panels": "panel",
            "about": "about",
            "agents": "agent",
        }
    )
    """Workspace subdirectory → unit kind. Each child directory is one unit."""

    internal_scopes: tuple[str, ...] = (
        "@workspace/",
        "@workspace-panels/",
        "@workspace-about/",
        "@workspace-agents/",
    )
    """Dependency name prefixes that mark workspace-internal units."""

    manifest_file: str = "package.json"
    """Manifest file at each unit's repository root."""

    manifest_key: str = "cairn"
    """Key of the build-configuration block inside the manifest."""


@dataclass(frozen=True, slots=True)
class GitConfig:
    """Git access settings."""

    main_branches: tuple[str, ...] = ("main", "master")
    """Branches whose pushes are always processed, in main-ref preference order."""

    timeout: float = 30.0
    """Timeout for a single git invocation (seconds)."""


@dataclass(frozen=True, slots=True)
class BuildsConfig:
    """Build store and builder settings."""

    max_concurrent: int = 4
    """Maximum bundler invocations running at once."""

    cache_version: str = "1"
    """Bumped when bundler behaviour changes; invalidates every build key."""

    stale_tmp_seconds: float = 3600.0
    """Age after which gc removes abandoned temp directories."""


@dataclass(frozen=True, slots=True)
class ExternalDepsConfig:
    """External dependency installation settings."""

    install_command: tuple[str, ...] = (
        "npm",
        "install",
        "--prefer-offline",
        "--no-audit",
        "--no-fund",
        "--ignore-scripts",
        "--legacy-peer-deps",
    )
    """Command run inside the temp directory holding the generated manifest."""

    env_dirname: str = "node_modules"
    """Installed-environment directory inside each cache entry."""

    timeout: float = 120.0
    """Timeout for one installation (seconds)."""


@dataclass(frozen=True, slots=True)
class BundlerConfig:
    """Settings for the command-line bundler integration."""

    command: tuple[str, ...] = ()
    """Bundler command. Empty means no command bundler is configured."""

    timeout: float = 300.0
    """Timeout for one bundler run (seconds)."""


@dataclass(frozen=True, slots=True)
class CairnConfig:
    """Root configuration for Cairn."""

    state_dir: str = ".cairn/state"
    """Directory holding persisted documents, builds and dependency caches."""

    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    git: GitConfig = field(default_factory=GitConfig)
    builds: BuildsConfig = field(default_factory=BuildsConfig)
    external_deps: ExternalDepsConfig = field(default_factory=ExternalDepsConfig)
    bundler: BundlerConfig = field(default_factory=BundlerConfig)

    def state_path(self, workspace_root: Path | None = None) -> Path:
        """Resolve the state directory, relative paths against the workspace."""
        path = Path(self.state_dir).expanduser()
        if path.is_absolute() or workspace_root is None:
            return path
        return workspace_root / path

    def to_dict(self) -> dict[str, Any]:
        """Convert to a YAML/JSON-serializable dict."""
        return _plain(asdict(self))


_SECTIONS: dict[str, type] = {
    "workspace": WorkspaceConfig,
    "git": GitConfig,
    "builds": BuildsConfig,
    "external_deps": ExternalDepsConfig,
    "bundler": BundlerConfig,
}


def _plain(value: Any) -> Any:
    """Convert tuples to lists recursively for serialization."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _deep_update(base: dict, updates: dict) -> dict:
    """Recursively update a dict with another dict."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _coerce_env_value(value: str) -> Any:
    """Coerce an environment string to bool/int/float/list where it looks like one."""
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit() or (value.startswith("-") and value[1:].isdigit()):
        return int(value)
    try:
        return float(value)
    except ValueError:
        pass
    if "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _apply_env_overrides(config_dict: dict, environ: dict[str, str] | None = None) -> dict:
    """Apply environment variable overrides.

    Environment variables follow the pattern CAIRN_<SECTION>_<KEY>, where the
    section is one of the known config sections and the key may itself
    contain underscores.

    Examples:
        CAIRN_STATE_DIR=/var/lib/cairn
        CAIRN_BUILDS_MAX_CONCURRENT=8
        CAIRN_GIT_MAIN_BRANCHES=main,trunk
    """
    prefix = "CAIRN_"
    env = os.environ if environ is None else environ

    for key, value in env.items():
        if not key.startswith(prefix):
            continue
        path_str = key[len(prefix):].lower()

        if path_str == "state_dir":
            config_dict["state_dir"] = value
            continue

        # Longest section name first so "external_deps" wins over a shorter match
        for section in sorted(_SECTIONS, key=len, reverse=True):
            if not path_str.startswith(section + "_"):
                continue
            field_name = path_str[len(section) + 1:]
            known = {f.name for f in fields(_SECTIONS[section])}
            if field_name in known:
                config_dict.setdefault(section, {})[field_name] = _coerce_env_value(value)
            break

    return config_dict


def _build_section(section_cls: type, data: Any) -> Any:
    """Instantiate a section dataclass, ignoring unknown keys."""
    if not isinstance(data, dict):
        return section_cls()

    # Annotations are strings under `from __future__ import annotations`
    declared = {f.name: f.type for f in fields(section_cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in declared:
            logger.warning("Ignoring unknown config key %s.%s", section_cls.__name__, key)
            continue
        if isinstance(value, list):
            value = tuple(value)
        elif isinstance(value, str) and key in ("command", "install_command", "main_branches", "internal_scopes"):
            value = tuple(value.split())
        elif declared[key] == "str" and value is not None and not isinstance(value, str):
            value = str(value)
        kwargs[key] = value
    return section_cls(**kwargs)


def _dict_to_config(data: dict) -> CairnConfig:
    """Convert a dict to CairnConfig."""
    sections = {name: _build_section(cls, data.get(name, {})) for name, cls in _SECTIONS.items()}
    return CairnConfig(state_dir=str(data.get("state_dir", ".cairn/state")), **sections)


def load_config(
    path: str | Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> CairnConfig:
    """Load configuration from file with defaults and env overrides.

    Priority (highest to lowest):
    1. Environment variables (CAIRN_*)
    2. Explicit path if provided
    3. .cairn/config.yaml (workspace-local)
    4. ~/.cairn/config.yaml (user-global)
    5. Built-in defaults

    Args:
        path: Optional explicit config file path.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Merged CairnConfig instance.
    """
    config_dict: dict[str, Any] = CairnConfig().to_dict()

    config_paths: list[Path] = []
    if path:
        config_paths.append(Path(path))
    config_paths.extend([
        Path(".cairn/config.yaml"),
        Path.home() / ".cairn" / "config.yaml",
    ])

    for config_path in config_paths:
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Skipping unreadable config %s: %s", config_path, e)
                continue
            if isinstance(file_config, dict):
                _deep_update(config_dict, file_config)
            break  # Use first found config

    config_dict = _apply_env_overrides(config_dict, environ)
    return _dict_to_config(config_dict)
