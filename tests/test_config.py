"""Unit tests for config.py - Configuration management."""

import os
from unittest.mock import patch

from config import (
    DEFAULT_CA_PATH,
    DEFAULT_TOKEN_PATH,
    APIConfig,
    Config,
    ControllerConfig,
    StoreConfig,
    read_token,
)


class TestStoreConfig:
    """Tests for StoreConfig class."""

    def test_default_values(self):
        cfg = StoreConfig()
        assert cfg.api_server == "https://kubernetes.default.svc"
        assert cfg.token_path == DEFAULT_TOKEN_PATH
        assert cfg.ca_path == DEFAULT_CA_PATH
        assert cfg.namespace == "inteldeviceplugins-system"
        assert cfg.request_timeout == 30
        assert cfg.verify_ssl is True

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "KUBERNETES_API_SERVER": "https://10.0.0.1:6443",
            "KUBERNETES_TOKEN_PATH": "/tmp/token",
            "KUBERNETES_CA_PATH": "/tmp/ca.crt",
            "OPERATOR_NAMESPACE": "gpu-operators",
            "STORE_REQUEST_TIMEOUT": "10",
            "STORE_VERIFY_SSL": "false",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = StoreConfig.from_env()
            assert cfg.api_server == "https://10.0.0.1:6443"
            assert cfg.token_path == "/tmp/token"
            assert cfg.ca_path == "/tmp/ca.crt"
            assert cfg.namespace == "gpu-operators"
            assert cfg.request_timeout == 10
            assert cfg.verify_ssl is False

    def test_from_env_in_cluster_service(self):
        """The in-cluster service host and port are used when no server is set."""
        env_vars = {
            "KUBERNETES_SERVICE_HOST": "10.96.0.1",
            "KUBERNETES_SERVICE_PORT": "443",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = StoreConfig.from_env()
            assert cfg.api_server == "https://10.96.0.1:443"

    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = StoreConfig.from_env()
            assert cfg.api_server == "https://kubernetes.default.svc"
            assert cfg.namespace == "inteldeviceplugins-system"
            assert cfg.verify_ssl is True


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        cfg = ControllerConfig()
        assert cfg.max_concurrent_reconciles == 5
        assert cfg.resync_interval == 300
        assert cfg.backoff_base_delay == 1.0
        assert cfg.backoff_max_delay == 300.0
        assert cfg.backoff_jitter_factor == 0.1
        assert cfg.max_transient_retries == 5
        assert cfg.status_conflict_retries == 5
        assert cfg.enabled_kinds == []

    def test_from_env(self):
        env_vars = {
            "MAX_CONCURRENT_RECONCILES": "10",
            "RESYNC_INTERVAL": "60",
            "BACKOFF_BASE_DELAY": "0.5",
            "BACKOFF_MAX_DELAY": "30",
            "BACKOFF_JITTER_FACTOR": "0.2",
            "MAX_TRANSIENT_RETRIES": "3",
            "STATUS_CONFLICT_RETRIES": "7",
            "ENABLED_KINDS": "gpu, qat ,",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = ControllerConfig.from_env()
            assert cfg.max_concurrent_reconciles == 10
            assert cfg.resync_interval == 60
            assert cfg.backoff_base_delay == 0.5
            assert cfg.backoff_max_delay == 30.0
            assert cfg.backoff_jitter_factor == 0.2
            assert cfg.max_transient_retries == 3
            assert cfg.status_conflict_retries == 7
            assert cfg.enabled_kinds == ["gpu", "qat"]

    def test_enabled_kinds_not_shared(self):
        """Each instance gets its own enabled_kinds list."""
        a = ControllerConfig()
        b = ControllerConfig()
        a.enabled_kinds.append("gpu")
        assert b.enabled_kinds == []


class TestAPIConfig:
    """Tests for APIConfig class."""

    def test_default_values(self):
        cfg = APIConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 8081
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        env_vars = {"API_HOST": "127.0.0.1", "API_PORT": "9090", "LOG_LEVEL": "DEBUG"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = APIConfig.from_env()
            assert cfg.host == "127.0.0.1"
            assert cfg.port == 9090
            assert cfg.log_level == "DEBUG"


class TestConfig:
    """Tests for the aggregate Config class."""

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.store, StoreConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.api, APIConfig)

    def test_from_env(self):
        env_vars = {"OPERATOR_NAMESPACE": "ns1", "API_PORT": "8000"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = Config.from_env()
            assert cfg.store.namespace == "ns1"
            assert cfg.api.port == 8000
            assert cfg.controller.max_concurrent_reconciles == 5

    def test_instances_are_independent(self):
        """There is no shared global configuration."""
        a = Config.default()
        b = Config.default()
        a.store.namespace = "changed"
        assert b.store.namespace == "inteldeviceplugins-system"


class TestReadToken:
    """Tests for read_token function."""

    def test_reads_and_strips_token(self, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("abc.def.ghi\n")
        cfg = StoreConfig(token_path=str(token_file))
        assert read_token(cfg) == "abc.def.ghi"

    def test_missing_token_returns_none(self, tmp_path):
        cfg = StoreConfig(token_path=str(tmp_path / "missing"))
        assert read_token(cfg) is None
