import asyncio

import pytest

from resurrector.config import ToolServerConfig
from resurrector.tool_client import ToolClient, ToolError, ToolErrorCode
from resurrector.tool_registry import ToolOrchestrator, UnknownServerError
from tests.fakes import FakeToolServer, SleepRecorder


def build_orchestrator(servers, **kwargs) -> ToolOrchestrator:
    configs = [ToolServerConfig(name=name, command="node") for name in servers]

    def factory(config):
        return ToolClient(config, transport_factory=servers[config.name].transport_factory, sleep=SleepRecorder())

    return ToolOrchestrator(configs, client_factory=factory, **kwargs)


@pytest.mark.asyncio
async def test_connect_all_isolates_failures():
    servers = {"abap-analyzer": FakeToolServer(), "sap-cap-generator": FakeToolServer(open_errors=1)}
    orchestrator = build_orchestrator(servers)
    failures = await orchestrator.connect_all()
    assert set(failures) == {"sap-cap-generator"}
    assert failures["sap-cap-generator"].code == ToolErrorCode.CONNECTION_FAILED
    assert orchestrator.get_client("abap-analyzer").is_connected
    assert orchestrator.server_health["abap-analyzer"].healthy is True
    assert orchestrator.server_health["sap-cap-generator"].healthy is False
    assert orchestrator.available_servers() == ["abap-analyzer"]
    await orchestrator.stop()


def test_get_client_unknown_server_lists_available():
    orchestrator = build_orchestrator({"abap-analyzer": FakeToolServer()})
    with pytest.raises(UnknownServerError) as excinfo:
        orchestrator.get_client("sap-ui5-generator")
    assert "abap-analyzer" in str(excinfo.value)
    assert orchestrator.has_server("abap-analyzer")
    assert not orchestrator.has_server(None)


def test_duplicate_server_names_are_rejected():
    configs = [ToolServerConfig(name="github", command="uvx"), ToolServerConfig(name="github", command="uvx")]
    with pytest.raises(ValueError):
        ToolOrchestrator(configs)


@pytest.mark.asyncio
async def test_health_checks_update_status_map():
    failing = FakeToolServer(responses={"ping": [ToolError(ToolErrorCode.REQUEST_FAILED, "ping refused")]})
    servers = {"abap-analyzer": FakeToolServer(), "github": failing}
    orchestrator = build_orchestrator(servers)
    health = await orchestrator.perform_health_checks()
    assert health["abap-analyzer"].healthy is True
    assert health["github"].healthy is False
    assert "ping refused" in health["github"].last_error
    assert health["github"].last_check is not None
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_background_health_loop_stops_on_teardown():
    server = FakeToolServer()
    orchestrator = build_orchestrator({"abap-analyzer": server}, auto_connect=False, health_check_interval_ms=10)
    await orchestrator.start()
    await asyncio.sleep(0.1)
    await orchestrator.stop()
    pings = server.call_count("ping")
    assert pings >= 1
    assert orchestrator.get_stats()["health_checks_running"] is False
    await asyncio.sleep(0.05)
    assert server.call_count("ping") == pings


@pytest.mark.asyncio
async def test_busy_client_is_skipped_by_health_round():
    server = FakeToolServer(delay_seconds=0.2)
    orchestrator = build_orchestrator({"abap-analyzer": server})
    call = asyncio.create_task(orchestrator.call_tool("abap-analyzer", "analyzeCode", {"code": "x"}))
    await asyncio.sleep(0.05)
    await orchestrator.perform_health_checks()
    assert server.call_count("ping") == 0
    response = await call
    assert response.success is True
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_reconnect_server_restarts_connection():
    server = FakeToolServer()
    orchestrator = build_orchestrator({"abap-analyzer": server})
    await orchestrator.connect_all()
    assert await orchestrator.reconnect_server("abap-analyzer") is True
    assert server.opened == 2
    assert server.closed == 1
    assert orchestrator.is_server_available("abap-analyzer")
    stats = orchestrator.get_stats()
    assert stats["total_servers"] == 1
    assert stats["servers"]["abap-analyzer"]["connection_attempts"] == 2
    await orchestrator.stop()
