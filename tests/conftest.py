"""Shared test fixtures.

Everything runs against the in-memory object store; no cluster, gt binary
or git remote is needed.  The settings cache is cleared around every test
so ``monkeypatch.setenv("GASTOWN_...")`` takes effect.  Object factories
live in ``tests/factories.py``.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from gastown.operator.settings import GastownSettings, _get_settings_cached
from gastown.operator.store.memory import InMemoryObjectStore


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def settings() -> GastownSettings:
    return GastownSettings(_env_file=None, namespace="gastown-system")


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()
