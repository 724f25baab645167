"""Pytest configuration and shared fixtures for applogs tests."""

from __future__ import annotations

import pytest

from applogs.types import AppLogsConfig, HostProfile, LogEntry
from mocks import COLLECTOR_URL, MockBlockingSender, MockSender, make_entry


@pytest.fixture
def config() -> AppLogsConfig:
    """Client configuration without teardown hooks or retry delays."""
    return AppLogsConfig(
        api_key="ak_test",
        endpoint=COLLECTOR_URL,
        retry_delay=0,
        register_teardown=False,
        host_profile=HostProfile.PERSISTENT,
    )


@pytest.fixture
def sender() -> MockSender:
    return MockSender()


@pytest.fixture
def blocking_sender() -> MockBlockingSender:
    return MockBlockingSender()


@pytest.fixture
def entries() -> list[LogEntry]:
    """Five entries in arrival order."""
    return [make_entry(i) for i in range(5)]


@pytest.fixture
def error_callback(mocker):
    return mocker.MagicMock()
