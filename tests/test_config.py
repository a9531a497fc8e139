"""Tests for configuration loading."""

import pytest

from opencode_feishu.config import load_config, parse_config
from opencode_feishu.errors import ConfigError

MINIMAL = """
feishu:
  app_id: cli_test
  app_secret: secret
"""


class TestParseConfig:
    def test_defaults(self):
        config = parse_config(MINIMAL)

        assert config.opencode.base_url == "http://localhost:4096"
        assert config.opencode.timeout == 120
        assert config.bot.thinking_delay == 2.5
        assert config.bot.group_policy == "mention"
        assert config.feishu.base_url == "https://open.feishu.cn"
        assert config.relay.enabled is True
        assert config.relay.show_reasoning is True

    def test_env_interpolation(self, monkeypatch):
        monkeypatch.setenv("FEISHU_APP_ID", "cli_from_env")
        monkeypatch.setenv("FEISHU_APP_SECRET", "s3cret")

        config = parse_config(
            "feishu:\n  app_id: ${FEISHU_APP_ID}\n  app_secret: ${FEISHU_APP_SECRET}\n"
        )

        assert config.feishu.app_id == "cli_from_env"
        assert config.feishu.app_secret == "s3cret"

    def test_unset_credential_rejected(self, monkeypatch):
        monkeypatch.delenv("FEISHU_APP_SECRET_UNSET", raising=False)
        with pytest.raises(ConfigError):
            parse_config("feishu:\n  app_id: cli\n  app_secret: ${FEISHU_APP_SECRET_UNSET}\n")

    def test_missing_credentials_rejected(self):
        with pytest.raises(ConfigError):
            parse_config("opencode:\n  timeout: 30\n")

    def test_invalid_timeout_rejected(self):
        with pytest.raises(ConfigError):
            parse_config(MINIMAL + "opencode:\n  timeout: 0\n")

    def test_invalid_group_policy_rejected(self):
        with pytest.raises(ConfigError):
            parse_config(MINIMAL + "bot:\n  group_policy: everything\n")

    def test_invalid_yaml(self):
        with pytest.raises(ConfigError):
            parse_config("feishu: [unclosed")

    def test_non_mapping_root(self):
        with pytest.raises(ConfigError):
            parse_config("- just\n- a list\n")


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "config.yaml", tmp_path / ".env")

    def test_reads_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BRIDGE_TEST_SECRET", raising=False)
        (tmp_path / ".env").write_text("BRIDGE_TEST_SECRET=from-dotenv\n", encoding="utf-8")
        (tmp_path / "config.yaml").write_text(
            "feishu:\n  app_id: cli\n  app_secret: ${BRIDGE_TEST_SECRET}\n", encoding="utf-8"
        )

        config = load_config(tmp_path / "config.yaml", tmp_path / ".env")

        assert config.feishu.app_secret == "from-dotenv"
        monkeypatch.delenv("BRIDGE_TEST_SECRET", raising=False)
