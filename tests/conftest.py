"""Shared fixtures wiring the fakes into asyncpg."""

from __future__ import annotations

import pytest

from fakes import FakeProvisioner, FakeServer


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    fake = FakeServer()
    monkeypatch.setattr("pgtest.fixture.asyncpg.create_pool", fake.create_pool)
    monkeypatch.setattr("pgtest.settings.asyncpg.connect", fake.connect)
    return fake


@pytest.fixture
def provisioner(server: FakeServer) -> FakeProvisioner:
    return FakeProvisioner(server)
