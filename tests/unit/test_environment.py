"""Tests for host classification and configuration loading."""

import pytest

from applogs.environment import classify_host, detect_runtime
from applogs.types import AppLogsConfig, HostProfile, LogEntry


class TestClassifyHost:
    def test_plain_environment_is_persistent(self):
        assert classify_host({}) is HostProfile.PERSISTENT

    @pytest.mark.parametrize(
        "marker",
        ["AWS_LAMBDA_FUNCTION_NAME", "FUNCTIONS_WORKER_RUNTIME", "FUNCTION_TARGET", "VERCEL", "NETLIFY"],
    )
    def test_function_runtimes_are_ephemeral(self, marker):
        assert classify_host({marker: "1"}) is HostProfile.EPHEMERAL

    def test_empty_marker_is_ignored(self):
        assert classify_host({"VERCEL": ""}) is HostProfile.PERSISTENT

    def test_override_wins(self):
        env = {"AWS_LAMBDA_FUNCTION_NAME": "fn", "APPLOGS_HOST_PROFILE": "Persistent"}
        assert classify_host(env) is HostProfile.PERSISTENT

    def test_unknown_override_falls_back_to_detection(self):
        env = {"APPLOGS_HOST_PROFILE": "sometimes", "NETLIFY": "true"}
        assert classify_host(env) is HostProfile.EPHEMERAL

    def test_runtime_name(self):
        assert detect_runtime().startswith("python-")


class TestConfig:
    def test_api_key_is_required(self):
        with pytest.raises(ValueError, match="API key is required"):
            AppLogsConfig(endpoint="https://collector.test")

    def test_endpoint_is_required(self):
        with pytest.raises(ValueError, match="endpoint"):
            AppLogsConfig(api_key="ak_test")

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            AppLogsConfig(api_key="ak_test", endpoint="https://collector.test", batch_size=0)

    def test_from_env(self):
        env = {
            "APPLOGS_API_KEY": "ak_env",
            "APPLOGS_ENDPOINT": "https://collector.test/v1/logs",
            "APPLOGS_BATCH_SIZE": "10",
            "APPLOGS_FLUSH_INTERVAL": "2.5",
            "APPLOGS_HOST_PROFILE": "EPHEMERAL",
        }
        config = AppLogsConfig.from_env(env)

        assert config.api_key == "ak_env"
        assert config.batch_size == 10
        assert config.flush_interval == 2.5
        assert config.host_profile is HostProfile.EPHEMERAL

    def test_from_env_overrides_win(self):
        env = {"APPLOGS_API_KEY": "ak_env", "APPLOGS_ENDPOINT": "https://a.test"}
        config = AppLogsConfig.from_env(env, endpoint="https://b.test", register_teardown=False)
        assert config.endpoint == "https://b.test"
        assert config.register_teardown is False

    def test_from_env_without_key(self):
        with pytest.raises(ValueError, match="API key"):
            AppLogsConfig.from_env({"APPLOGS_ENDPOINT": "https://a.test"})


class TestLogEntry:
    def test_wire_form_omits_missing_fields(self):
        entry = LogEntry(level="info", message="hi", timestamp="2024-01-01T00:00:00+00:00", source="sdk")
        assert entry.to_dict() == {
            "level": "info",
            "message": "hi",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "source": "sdk",
        }

    def test_trace_id_uses_wire_key(self):
        entry = LogEntry("error", "boom", "t", "sdk", trace_id="abc", metadata={"k": 1})
        assert entry.to_dict()["traceId"] == "abc"
        assert entry.to_dict()["metadata"] == {"k": 1}
