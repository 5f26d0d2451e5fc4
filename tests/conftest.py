"""Shared test fixtures for the unified chat gateway tests."""

import json
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

import pytest

from gateway.backends import Backend, BackendError
from gateway.config import GatewayConfig, load_config
from gateway.models import ChatMessage


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "backends": {
            "alpha": {
                "kind": "groq",
                "display_name": "Alpha",
                "base_url": "https://alpha.example.com/v1",
                "api_key_env": "ALPHA_API_KEY",
                "default_model": "alpha-small",
                "models": ["alpha-small", "alpha-large"],
            },
            "beta": {
                "kind": "cerebras",
                "display_name": "Beta",
                "base_url": "https://beta.example.com/v1",
                "api_key_env": "BETA_API_KEY",
                "default_model": "beta-base",
            },
            "gamma": {
                "kind": "openrouter",
                "display_name": "Gamma",
                "base_url": "https://gamma.example.com/api/v1",
                "api_key_env": "GAMMA_API_KEY",
                "default_model": "gamma/free",
            },
        },
        "routes": {
            "alpha": "alpha",
            "beta": "beta",
            "gamma/": "gamma",
        },
        "request_timeout": 5.0,
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


class FakeBackend(Backend):
    """Scripted backend that records calls and how far it was pulled."""

    def __init__(
        self,
        name: str,
        increments: Sequence[str] = ("Hello", " world"),
        fail_on_open: bool = False,
        fail_at_end: bool = False,
    ) -> None:
        self.name = name
        self.increments = list(increments)
        self.fail_on_open = fail_on_open
        self.fail_at_end = fail_at_end
        self.calls: List[tuple] = []
        self.pulled = 0
        self.closed = False

    async def chat(
        self, messages: Sequence[ChatMessage], model: Optional[str] = None
    ) -> AsyncIterator[str]:
        self.calls.append((list(messages), model))
        if self.fail_on_open:
            raise BackendError(self.name, "connection refused")
        return self._stream()

    async def _stream(self) -> AsyncIterator[str]:
        try:
            for text in self.increments:
                self.pulled += 1
                yield text
            if self.fail_at_end:
                raise BackendError(self.name, "stream reset by peer")
        finally:
            self.closed = True


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def make_backend() -> Callable[..., FakeBackend]:
    """Return a factory for scripted fake backends."""
    return FakeBackend


@pytest.fixture()
def fake_backends() -> List[FakeBackend]:
    """Three fake backends named after the test config's backends."""
    return [FakeBackend("alpha"), FakeBackend("beta"), FakeBackend("gamma")]
