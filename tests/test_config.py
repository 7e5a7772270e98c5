"""Tests for the layered config loader and secret stores."""

from __future__ import annotations

import os

import pytest

from echochat.agent.request import build_request
from echochat.config import EchoConfig, ProviderConfig, load_config
from echochat.llm.types import ChatMessage, Role, ToolDefinition
from echochat.secrets import EnvSecretStore, MappingSecretStore

CONFIG_YAML = """\
provider:
  provider: local
  model: llama3
  api_base: http://localhost:8080
agent:
  max_iterations: 4
  disabled_tools: [shell_execute]
logging:
  level: INFO
profiles:
  cloud:
    provider:
      provider: gemini
      model: gemini-2.0-flash
      api_key_env: GEMINI_API_KEY
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("ECHOCHAT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def config_file(tmp_path):
    p = tmp_path / "echochat.yaml"
    p.write_text(CONFIG_YAML, encoding="utf-8")
    return p


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config()
        assert cfg.provider.provider == "claude"
        assert cfg.agent.max_iterations == 10
        assert cfg.agent.enabled is True
        assert cfg.logging.level == "WARNING"

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg.provider.provider == "claude"

    def test_yaml_file(self, config_file):
        cfg = load_config(config_file)
        assert cfg.provider.provider == "local"
        assert cfg.provider.api_base == "http://localhost:8080"
        assert cfg.agent.max_iterations == 4
        assert cfg.agent.disabled_tools == ["shell_execute"]
        # Sections not in the file keep their defaults.
        assert cfg.agent.auto_approve_safe_tools is True

    def test_unknown_keys_ignored(self, tmp_path):
        p = tmp_path / "c.yaml"
        p.write_text("provider:\n  model: m\n  flavour: spicy\n")
        assert load_config(p).provider.model == "m"

    def test_non_mapping_file(self, tmp_path):
        p = tmp_path / "c.yaml"
        p.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_config(p)

    def test_profile_overlays_file(self, config_file):
        cfg = load_config(config_file, profile="cloud")
        assert cfg.provider.provider == "gemini"
        assert cfg.provider.model == "gemini-2.0-flash"
        assert cfg.provider.api_base == "http://localhost:8080"
        assert cfg.agent.max_iterations == 4

    def test_unknown_profile(self, config_file):
        with pytest.raises(ValueError, match="Unknown profile: nope"):
            load_config(config_file, profile="nope")

    def test_env_beats_file(self, config_file, monkeypatch):
        monkeypatch.setenv("ECHOCHAT_MODEL", "qwen")
        monkeypatch.setenv("ECHOCHAT_AGENT_ENABLED", "no")
        monkeypatch.setenv("ECHOCHAT_TEMPERATURE", "0.2")
        monkeypatch.setenv("ECHOCHAT_AGENT_DISABLED_TOOLS", "web_fetch, file_write")
        cfg = load_config(config_file)
        assert cfg.provider.model == "qwen"
        assert cfg.agent.enabled is False
        assert cfg.provider.temperature == 0.2
        assert cfg.agent.disabled_tools == ["web_fetch", "file_write"]

    def test_cli_beats_env(self, monkeypatch):
        monkeypatch.setenv("ECHOCHAT_MODEL", "from-env")
        cfg = load_config(cli_overrides={"provider.model": "from-cli", "provider.provider": None})
        assert cfg.provider.model == "from-cli"
        assert cfg.provider.provider == "claude"

    def test_unknown_cli_key(self):
        with pytest.raises(AttributeError, match="Unknown config key"):
            load_config(cli_overrides={"provider.colour": "red"})


class TestOverrides:
    def test_session_override(self):
        cfg = EchoConfig()
        cfg.set_override("agent.max_iterations", 2)
        assert cfg.agent.max_iterations == 2
        assert cfg.get_override("agent.max_iterations") == 2
        assert cfg.get_override("provider.model") is None

    def test_to_dict_hides_overrides(self):
        cfg = EchoConfig()
        cfg.set_override("provider.model", "x")
        d = cfg.to_dict()
        assert "_overrides" not in d
        assert d["provider"]["model"] == "x"


class TestSecrets:
    def test_env_store(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "sk-123")
        monkeypatch.setenv("EMPTY_KEY", "")
        store = EnvSecretStore()
        assert store.resolve("MY_KEY") == "sk-123"
        assert store.resolve("EMPTY_KEY") is None
        assert store.resolve("") is None

    def test_mapping_store(self):
        store = MappingSecretStore({"a": "1"})
        assert store.resolve("a") == "1"
        assert store.resolve("b") is None


class TestBuildRequest:
    def test_maps_provider_settings(self):
        tool = ToolDefinition("echo", "Echo", {"type": "object", "properties": {}})
        messages = [ChatMessage(role=Role.USER, content="hi")]
        req = build_request(
            ProviderConfig(model="m", api_base="http://x", max_tokens=0, temperature=0.3),
            "key",
            messages,
            system_prompt="sys",
            tools=[tool],
        )
        assert req.model == "m"
        assert req.api_key == "key"
        assert req.base_url == "http://x"
        assert req.max_tokens is None
        assert req.temperature == 0.3
        assert req.system_prompt == "sys"
        assert req.tools == [tool]
        assert req.messages == messages
        assert req.messages is not messages

    def test_empty_values_become_none(self):
        req = build_request(ProviderConfig(api_base="", max_tokens=512), "", [])
        assert req.base_url is None
        assert req.system_prompt is None
        assert req.max_tokens == 512
        assert req.tools == []
