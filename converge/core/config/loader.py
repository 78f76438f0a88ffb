"""
Configuration loader — reads converge.yml into a ProjectConfig.

The config file is optional.  Without one, the workspace is the
current directory and every setting takes its default.  All paths in
the config are relative to the directory containing it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError as SchemaError

from converge.core.engine.outputs import DEFAULT_OUTPUTS_FILE
from converge.core.errors import ConfigError
from converge.core.models.project import ProjectConfig
from converge.core.persistence.audit import DEFAULT_AUDIT_FILE
from converge.core.persistence.state_store import default_state_path

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "converge.yml"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for converge.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to converge.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(path: Path) -> ProjectConfig:
    """Load and validate project configuration.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading project config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        config = ProjectConfig.model_validate(data)
    except SchemaError as e:
        raise ConfigError(f"Invalid project configuration: {e}") from e

    logger.info("Loaded project '%s' (provider: %s)", config.name, config.provider.name)
    return config


@dataclass
class Workspace:
    """Resolved locations of everything a run reads and writes."""

    root: Path
    config: ProjectConfig
    config_path: Path | None = None

    @property
    def desired_path(self) -> Path:
        return self.root / self.config.desired

    @property
    def vars_file(self) -> Path | None:
        return self.root / self.config.vars_file if self.config.vars_file else None

    @property
    def state_dir(self) -> Path:
        return self.root / self.config.state_dir

    @property
    def state_path(self) -> Path:
        return default_state_path(self.state_dir)

    @property
    def lock_path(self) -> Path:
        return self.state_path.with_suffix(".lock")

    @property
    def audit_path(self) -> Path:
        return self.state_dir / DEFAULT_AUDIT_FILE

    @property
    def outputs_path(self) -> Path:
        return self.state_dir / DEFAULT_OUTPUTS_FILE


def resolve_workspace(config_path: Path | None = None) -> Workspace:
    """Find and load the project configuration.

    Args:
        config_path: Explicit path to converge.yml. If None, searches
            upward from cwd; with no file found, defaults apply to cwd.

    Raises:
        ConfigError: If an explicit or found config file is invalid.
    """
    if config_path is None:
        config_path = find_config_file()

    if config_path is None:
        logger.debug("No %s found, using defaults in %s", CONFIG_FILE, Path.cwd())
        return Workspace(root=Path.cwd().resolve(), config=ProjectConfig())

    config = load_config(config_path)
    return Workspace(
        root=config_path.parent.resolve(),
        config=config,
        config_path=config_path,
    )
