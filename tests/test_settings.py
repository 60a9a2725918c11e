import json

from resurrector.config import (
    AppSettings,
    DeployConfig,
    ToolServerConfig,
    default_tool_servers,
    load_settings,
    save_settings,
)


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"deploy": {"api_base_url": "http://config"}, "port": 9000}))
    monkeypatch.setenv("GITHUB_API_URL", "http://env")
    monkeypatch.setenv("PORT", "7000")
    monkeypatch.delenv("RESURRECTOR_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.deploy.api_base_url == "http://config"
    assert settings.port == 9000


def test_env_override_when_resurrector_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"deploy": {"api_base_url": "http://config", "private_repos": True}}))
    monkeypatch.setenv("GITHUB_API_URL", "http://env")
    monkeypatch.setenv("RESURRECTOR_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.deploy.api_base_url == "http://env"
    assert settings.deploy.private_repos is True


def test_token_only_in_environment_is_picked_up(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"deploy": {"private_repos": True}}))
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_from_env")
    monkeypatch.delenv("RESURRECTOR_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.deploy.github_token == "ghp_from_env"
    assert settings.deploy.private_repos is True


def test_orchestrator_env_keys(tmp_path, monkeypatch):
    monkeypatch.setenv("TOOL_AUTO_CONNECT", "false")
    monkeypatch.setenv("TOOL_HEALTH_CHECK_INTERVAL_MS", "0")
    monkeypatch.setenv("VALIDATE_TIMEOUT_S", "15")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.orchestrator.auto_connect is False
    assert settings.orchestrator.health_check_interval_ms == 0
    assert settings.toolchain.validate_timeout_s == 15.0


def test_safe_dict_masks_tokens_and_save_round_trips(tmp_path, monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("RESURRECTOR_ENV_OVERRIDES_CONFIG", raising=False)
    settings = AppSettings(
        tool_servers=[
            ToolServerConfig(name="github", command="uvx", env={"GITHUB_PERSONAL_ACCESS_TOKEN": "ghp_secret"})
        ],
        deploy=DeployConfig(github_token="ghp_secret"),
    )
    safe = settings.to_safe_dict()
    assert safe["deploy"]["github_token"] == "********"
    assert safe["tool_servers"][0]["env"]["GITHUB_PERSONAL_ACCESS_TOKEN"] == "********"
    assert settings.deploy.github_token == "ghp_secret"

    config_path = tmp_path / "config.json"
    save_settings(settings, config_path=config_path)
    loaded = load_settings(config_path=config_path)
    assert loaded.deploy.github_token == "ghp_secret"
    assert [server.name for server in loaded.tool_servers] == ["github"]


def test_default_servers_match_engine_roles(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_from_env")
    servers = default_tool_servers()
    assert [server.name for server in servers] == ["abap-analyzer", "sap-cap-generator"]
    assert all(server.env == {} for server in servers)
    roles = AppSettings().orchestrator
    assert {roles.analyzer_server, roles.generator_server} == {server.name for server in servers}
