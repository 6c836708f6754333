"""Tests for workbench_agent.config, request models and logging setup."""

import json
import logging

import pytest

from workbench_agent.config import DEFAULT_CODEX_ARGS, WorkbenchConfig
from workbench_agent.logging_utils import configure_logging
from workbench_agent.models import ChatRequest, ProviderSettings


class TestWorkbenchConfig:

    def test_defaults(self):
        cfg = WorkbenchConfig()
        assert cfg.default_provider == "openai"
        assert cfg.anthropic.api_version == "2023-06-01"
        assert cfg.codex.invocation_args == DEFAULT_CODEX_ARGS
        assert cfg.codex.timeout_ms == 90_000
        assert cfg.agent.template_patterns

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "config.json"
        cfg = WorkbenchConfig()
        cfg.default_provider = "minimax"
        cfg.openai.model = "gpt-4o"
        cfg.codex.prefer_direct_channel = True
        cfg.save(path)

        loaded = WorkbenchConfig.load(path)
        assert loaded.default_provider == "minimax"
        assert loaded.openai.model == "gpt-4o"
        assert loaded.codex.prefer_direct_channel is True

    def test_save_never_writes_credentials(self, tmp_path):
        path = tmp_path / "config.json"
        WorkbenchConfig().save(path)
        assert "api_key" not in path.read_text()

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"openai": {"model": "m2", "bogus": 1}}))
        loaded = WorkbenchConfig.load(path)
        assert loaded.openai.model == "m2"
        assert not hasattr(loaded.openai, "bogus")

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WORKBENCH_AGENT_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("WORKBENCH_AGENT_DB", str(tmp_path / "other.db"))
        loaded = WorkbenchConfig.load(tmp_path / "missing.json")
        assert loaded.logging.level == "DEBUG"
        assert loaded.db_path == tmp_path / "other.db"


class TestRequestParsing:

    def test_camel_case_settings(self):
        settings = ProviderSettings.from_dict({
            "provider": "Anthropic",
            "anthropic": {"apiKey": "k", "baseUrl": "https://proxy.test/v1", "apiVersion": "2024-01-01"},
            "codex": {"binaryPath": "/usr/bin/codex", "preferMcp": True, "requestTimeoutMs": 5000},
        })
        assert settings.provider == "anthropic"
        assert settings.anthropic.base_url == "https://proxy.test/v1"
        assert settings.anthropic.model == "claude-3-5-sonnet-latest"
        assert settings.codex.binary_path_override == "/usr/bin/codex"
        assert settings.codex.prefer_direct_channel is True
        assert settings.codex.timeout_ms == 5000
        assert settings.active_config() is settings.anthropic

    def test_snake_case_settings(self):
        settings = ProviderSettings.from_dict({
            "provider": "openai",
            "openai": {"api_key": "k", "base_url": "https://x.test"},
        })
        assert settings.openai.api_key == "k"
        assert settings.openai.base_url == "https://x.test"

    def test_default_provider_from_config(self):
        cfg = WorkbenchConfig(default_provider="minimax")
        assert ProviderSettings.from_dict({}, cfg).provider == "minimax"

    def test_request_id_generated(self):
        request = ChatRequest.from_dict({"messages": [{"role": "user", "content": "hi"}]})
        assert len(request.request_id) == 32
        assert request.last_user_message == "hi"

    def test_unknown_role_becomes_user(self):
        request = ChatRequest.from_dict({"messages": [{"role": "tool", "content": "x"}]})
        assert request.messages[0].role == "user"

    def test_bad_codex_values_use_defaults(self):
        settings = ProviderSettings.from_dict({
            "provider": "codex",
            "codex": {"timeoutMs": "slow", "binaryPath": 7, "execArgs": "exec --json"},
        })
        assert settings.codex.timeout_ms == 90_000
        assert settings.codex.binary_path_override is None
        assert settings.codex.invocation_args == DEFAULT_CODEX_ARGS

    def test_malformed_messages_skipped(self):
        request = ChatRequest.from_dict({
            "requestId": "r1",
            "messages": ["oops", None, {"role": "user", "content": "hi"}],
            "settings": "openai",
        })
        assert request.request_id == "r1"
        assert [m.content for m in request.messages] == ["hi"]
        assert ChatRequest.from_dict({"messages": {"role": "user"}}).messages == []


class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_level_from_config(self):
        cfg = WorkbenchConfig()
        cfg.logging.level = "debug"
        configure_logging(cfg)
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_file_handler(self, tmp_path, monkeypatch):
        monkeypatch.setattr("workbench_agent.logging_utils.WORKBENCH_LOGS", tmp_path)
        cfg = WorkbenchConfig()
        cfg.logging.file = "agent.log"
        configure_logging(cfg)
        logging.getLogger("workbench_agent.test").warning("hello file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello file" in (tmp_path / "agent.log").read_text()
