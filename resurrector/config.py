import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "RESURRECTOR_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_TOOL_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
DEFAULT_HEALTH_CHECK_INTERVAL_MS = 60000
SECRET_MASK = "********"


class ToolServerConfig(BaseModel):
    """Static descriptor of one external tool server."""

    name: str
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: int = DEFAULT_TOOL_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES

    model_config = {"protected_namespaces": (), "frozen": True}


class OrchestratorConfig(BaseModel):
    auto_connect: bool = True
    health_check_interval_ms: int = DEFAULT_HEALTH_CHECK_INTERVAL_MS
    # Logical role -> tool server name. A role without a configured server falls back to local rules.
    analyzer_server: Optional[str] = "abap-analyzer"
    planner_server: Optional[str] = None
    generator_server: Optional[str] = "sap-cap-generator"

    model_config = {"protected_namespaces": ()}


class ToolchainConfig(BaseModel):
    # Optional scaffold command run in the job directory; "{name}" is replaced with the project name.
    scaffold_command: Optional[List[str]] = None
    validate_command: Optional[List[str]] = Field(default_factory=lambda: ["cds", "build", "--production"])
    validate_timeout_s: float = 120.0
    scaffold_timeout_s: float = 60.0

    model_config = {"protected_namespaces": ()}


class DeployConfig(BaseModel):
    github_token: Optional[str] = None
    api_base_url: str = "https://api.github.com"
    required_scope: str = "repo"
    private_repos: bool = False
    repo_prefix: str = "resurrection-"

    model_config = {"protected_namespaces": ()}


def default_tool_servers() -> List[ToolServerConfig]:
    return [
        ToolServerConfig(
            name="abap-analyzer",
            command="node",
            args=["./mcp-servers/abap-analyzer/index.js"],
            timeout=30000,
        ),
        ToolServerConfig(
            name="sap-cap-generator",
            command="node",
            args=["./mcp-servers/sap-cap-generator/index.js"],
            timeout=60000,
        ),
    ]


class AppSettings(BaseModel):
    tool_servers: List[ToolServerConfig] = Field(default_factory=default_tool_servers)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)

    database_path: str = "resurrector.db"
    work_dir: str = "temp/resurrections"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data["deploy"].get("github_token"):
            data["deploy"]["github_token"] = SECRET_MASK
        for server in data.get("tool_servers") or []:
            for key in list((server.get("env") or {}).keys()):
                if "TOKEN" in key.upper() and server["env"][key]:
                    server["env"][key] = SECRET_MASK
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "github_token": os.getenv("GITHUB_TOKEN"),
        "github_api_url": os.getenv("GITHUB_API_URL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "work_dir": os.getenv("WORK_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "auto_connect": os.getenv("TOOL_AUTO_CONNECT"),
        "health_check_interval_ms": os.getenv("TOOL_HEALTH_CHECK_INTERVAL_MS"),
        "validate_timeout_s": os.getenv("VALIDATE_TIMEOUT_S"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])

    deploy: Dict[str, Any] = {}
    if "github_token" in cleaned:
        deploy["github_token"] = cleaned.pop("github_token")
    if "github_api_url" in cleaned:
        deploy["api_base_url"] = cleaned.pop("github_api_url")
    if deploy:
        cleaned["deploy"] = deploy

    orchestrator: Dict[str, Any] = {}
    if "auto_connect" in cleaned:
        orchestrator["auto_connect"] = str(cleaned.pop("auto_connect")).strip().lower() in ENV_OVERRIDE_TRUE
    if "health_check_interval_ms" in cleaned:
        orchestrator["health_check_interval_ms"] = int(cleaned.pop("health_check_interval_ms"))
    if orchestrator:
        cleaned["orchestrator"] = orchestrator

    if "validate_timeout_s" in cleaned:
        cleaned["toolchain"] = {"validate_timeout_s": float(cleaned.pop("validate_timeout_s"))}
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def merge_nested(base: Dict[str, Any], top: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in top.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = merge_nested(file_data, env_data)
    else:
        merged = merge_nested(env_data, file_data)
    # A token stored only in the environment is still picked up.
    env_token = (env_data.get("deploy") or {}).get("github_token")
    deploy = merged.get("deploy") or {}
    if not deploy.get("github_token") and env_token:
        merged["deploy"] = {**deploy, "github_token": env_token}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
