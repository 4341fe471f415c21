"""Shared pytest fixtures for rhel-vms tests.

Nothing here starts a VM, runs macadam or reaches the network: the backend,
the capability probe and the SSO provider are fakes from tests/fakes.py, and
registry traffic goes through httpx.MockTransport.
"""

import os
from pathlib import Path

import pytest

from rhel_vms.host import AuthenticationSession, InMemoryConfigurationStore, InMemoryContext, InMemoryProvider
from rhel_vms.settings import Settings
from tests.fakes import FakeAuthProvider, FakeMacadam, FakeProbe, RecordingLogger


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer RHEL_VMS_* variables out of Settings()."""
    for key in list(os.environ):
        if key.startswith("RHEL_VMS_"):
            monkeypatch.delenv(key)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_path=tmp_path / "storage",
        poll_interval_seconds=0.01,
        registry_url="https://registry.test/management/v1/",
    )


@pytest.fixture
def fake_macadam() -> FakeMacadam:
    return FakeMacadam()


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def session() -> AuthenticationSession:
    return AuthenticationSession(access_token="token-123", organization_id="org-42", account="dev")


@pytest.fixture
def auth_provider(session: AuthenticationSession) -> FakeAuthProvider:
    return FakeAuthProvider(session)


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def config_store() -> InMemoryConfigurationStore:
    return InMemoryConfigurationStore()


@pytest.fixture
def context() -> InMemoryContext:
    return InMemoryContext()


@pytest.fixture
def run_logger() -> RecordingLogger:
    return RecordingLogger()
