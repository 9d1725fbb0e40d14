"""Shared test fixtures for the knowledge relay tests."""

import asyncio
import json
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from knowledge_relay.config import _ENV_OVERRIDES, RelayConfig, load_config
from knowledge_relay.generation import StreamDelta, TokenStream


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "server": {"port": 9090, "mode": "test"},
        "ai": {
            "base_url": "https://llm.example.com/v1",
            "model": "test-model",
        },
        "knowledge": {
            "base_url": "https://kb.example.com/query",
            "token": "kb-token",
            "top_k": 4,
        },
        "rag": {"system_prompt": "You are a test assistant."},
        "log": {"dir": str(tmp_path / "logs")},
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment variables from overriding test configs."""
    for name in list(_ENV_OVERRIDES) + ["ALLOW_DOMAINS", "ALLOW_DOMAIN"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> RelayConfig:
    """Return a loaded test RelayConfig."""
    return load_config(test_config_path)


class FakeTokenStream(TokenStream):
    """TokenStream over canned deltas that records how it was consumed."""

    def __init__(
        self,
        deltas: Iterable[StreamDelta],
        error: Optional[Exception] = None,
        hang: bool = False,
    ) -> None:
        self.items: List[StreamDelta] = list(deltas)
        self.pulled = 0
        self.close_calls = 0
        self._error = error
        self._hang = hang

        async def _close() -> None:
            self.close_calls += 1

        super().__init__(self._generate(), on_close=_close)

    async def _generate(self):
        for item in self.items:
            self.pulled += 1
            yield item
        if self._error is not None:
            raise self._error
        if self._hang:
            await asyncio.Event().wait()


@pytest.fixture()
def token_stream_factory() -> Callable[..., FakeTokenStream]:
    """Build fake token streams: factory(deltas, error=None, hang=False)."""
    return FakeTokenStream
