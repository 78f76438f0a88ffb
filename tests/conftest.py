"""
Shared test fixtures and configuration.
"""

import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from converge.adapters.mock import MockProvider
from converge.adapters.registry import ProviderRegistry
from converge.core.config.desired import build_desired_state
from converge.core.models.resource import DesiredState
from converge.core.persistence.state_store import StateStore
from converge.core.reliability.retry import RetryPolicy, immediate_policy

# db + web, web reads db's provider-assigned address
WEB_AND_DB = """\
    resources:
      - kind: virtual-machine
        name: db
        source: ubuntu-22.04
        attributes:
          cores: 2
          memory: 2048
      - kind: virtual-machine
        name: web
        source: ubuntu-22.04
        attributes:
          cores: 2
          memory: 2048
          env:
            DB_HOST: "${db.address}"
    outputs:
      web_address: web.address
      db_address: db.address
"""


@pytest.fixture
def web_and_db() -> str:
    return WEB_AND_DB


@pytest.fixture
def make_desired() -> Callable[..., DesiredState]:
    """Build a DesiredState from an (indented) YAML string."""

    def _make(text: str, overrides: dict | None = None) -> DesiredState:
        return build_desired_state(yaml.safe_load(textwrap.dedent(text)) or {}, overrides)

    return _make


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    """A state store in a fresh temporary state directory."""
    return StateStore(tmp_path / ".converge" / "state.json")


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def retry() -> RetryPolicy:
    """Zero-delay retry policy."""
    return immediate_policy()


@pytest.fixture
def registry(mock_provider: MockProvider) -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(mock_provider)
    return reg


@pytest.fixture
def project(tmp_path: Path) -> Callable[..., Path]:
    """Write converge.yml + infra.yml into tmp_path; returns the config path."""

    def _write(infra: str = WEB_AND_DB, config: str | None = None) -> Path:
        (tmp_path / "infra.yml").write_text(textwrap.dedent(infra))
        config_path = tmp_path / "converge.yml"
        config_path.write_text(
            textwrap.dedent(config)
            if config is not None
            else "name: test-infra\nprovider:\n  name: mock\n"
        )
        return config_path

    return _write
