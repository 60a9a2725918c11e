import time

import pytest

from resurrector.config import ToolServerConfig
from resurrector.tool_client import (
    ConnectionState,
    ToolClient,
    ToolError,
    ToolErrorCode,
    backoff_delay_ms,
)
from tests.fakes import FakeToolServer, SleepRecorder


def make_client(server: FakeToolServer, sleep=None, **config_overrides) -> ToolClient:
    config = ToolServerConfig(name="abap-analyzer", command="node", args=["index.js"], **config_overrides)
    return ToolClient(config, transport_factory=server.transport_factory, sleep=sleep or SleepRecorder())


def test_backoff_delays_double_and_cap():
    assert [backoff_delay_ms(n) for n in range(1, 7)] == [1000, 2000, 4000, 8000, 10000, 10000]


@pytest.mark.asyncio
async def test_connect_is_idempotent():
    server = FakeToolServer()
    client = make_client(server)
    await client.connect()
    await client.connect()
    assert client.state == ConnectionState.CONNECTED
    assert server.opened == 1
    assert client.connection_attempts == 1


@pytest.mark.asyncio
async def test_connect_failure_sets_error_state_and_raises():
    server = FakeToolServer(open_errors=1)
    client = make_client(server)
    with pytest.raises(ToolError) as excinfo:
        await client.connect()
    assert excinfo.value.code == ToolErrorCode.CONNECTION_FAILED
    assert excinfo.value.retryable is True
    assert client.state == ConnectionState.ERROR
    assert client.last_error is excinfo.value

    await client.connect()
    assert client.state == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_disconnect_swallows_teardown_errors():
    server = FakeToolServer(close_error=RuntimeError("pipe already gone"))
    client = make_client(server)
    await client.connect()
    await client.disconnect()
    assert client.state == ConnectionState.DISCONNECTED
    assert server.closed == 1

    await client.disconnect()
    assert server.closed == 1


@pytest.mark.asyncio
async def test_call_auto_connects_and_returns_uniform_result():
    server = FakeToolServer(responses={"analyzeCode": [{"tables": ["VBAK"]}]})
    client = make_client(server)
    response = await client.call("analyzeCode", {"code": "SELECT * FROM vbak."}, {"job_id": "j1"})
    assert response.success is True
    assert response.data == {"tables": ["VBAK"]}
    assert server.opened == 1
    assert server.calls == [("analyzeCode", {"code": "SELECT * FROM vbak."}, {"job_id": "j1"})]
    payload = response.to_dict()
    assert set(payload) == {"success", "data", "duration", "timestamp"}
    assert payload["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_retryable_failure_is_attempted_max_retries_times():
    server = FakeToolServer(responses={"analyzeCode": [ToolError(ToolErrorCode.REQUEST_FAILED, "server busy")]})
    sleep = SleepRecorder()
    client = make_client(server, sleep=sleep, max_retries=3)
    response = await client.call("analyzeCode", {"code": "x"})
    assert response.success is False
    assert server.call_count("analyzeCode") == 3
    assert sleep.delays == [1.0, 2.0]
    assert response.error.code == ToolErrorCode.MAX_RETRIES_EXCEEDED
    assert response.error.retryable is False
    assert response.error.details["last_error"]["code"] == "REQUEST_FAILED"
    assert client.retry_count == 2


@pytest.mark.asyncio
async def test_retries_wait_real_backoff_time():
    server = FakeToolServer(responses={"analyzeCode": [ToolError(ToolErrorCode.REQUEST_FAILED, "server busy")]})
    config = ToolServerConfig(name="abap-analyzer", command="node", max_retries=3)
    client = ToolClient(config, transport_factory=server.transport_factory)
    started = time.monotonic()
    response = await client.call("analyzeCode")
    elapsed = time.monotonic() - started
    assert response.success is False
    assert server.call_count("analyzeCode") == 3
    assert elapsed >= 3.0


@pytest.mark.asyncio
async def test_non_retryable_error_returns_without_backoff():
    error = ToolError(ToolErrorCode.REQUEST_FAILED, "unsupported syntax", retryable=False)
    server = FakeToolServer(responses={"analyzeCode": [error]})
    sleep = SleepRecorder()
    client = make_client(server, sleep=sleep, max_retries=3)
    response = await client.call("analyzeCode")
    assert response.success is False
    assert response.error is error
    assert server.call_count("analyzeCode") == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_timeout_is_reported_as_retryable_timeout():
    server = FakeToolServer(delay_seconds=0.5)
    client = make_client(server, timeout=20, max_retries=2)
    response = await client.call("analyzeCode")
    assert response.success is False
    assert server.call_count("analyzeCode") == 2
    last = response.error.details["last_error"]
    assert last["code"] == "TIMEOUT"
    assert last["retryable"] is True


@pytest.mark.asyncio
async def test_reconnects_before_retry_after_connection_loss():
    server = FakeToolServer(
        responses={
            "analyzeCode": [
                ToolError(ToolErrorCode.CONNECTION_FAILED, "tool server closed its output"),
                {"module": "SD"},
            ]
        }
    )
    states = []

    def factory(config):
        states.append(client.state)
        return server.transport_factory(config)

    sleep = SleepRecorder()
    config = ToolServerConfig(name="abap-analyzer", command="node")
    client = ToolClient(config, transport_factory=factory, sleep=sleep)
    response = await client.call("analyzeCode")
    assert response.success is True
    assert response.data == {"module": "SD"}
    assert server.opened == 2
    assert states == [ConnectionState.CONNECTING, ConnectionState.RECONNECTING]
    assert sleep.delays == [1.0]
    assert client.state == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_auto_connect_failure_is_retried_then_reported():
    server = FakeToolServer(open_errors=5)
    sleep = SleepRecorder()
    client = make_client(server, sleep=sleep, max_retries=3)
    response = await client.call("analyzeCode")
    assert response.success is False
    assert server.opened == 3
    assert response.error.details["last_error"]["code"] == "CONNECTION_FAILED"
    assert client.state == ConnectionState.ERROR


@pytest.mark.asyncio
async def test_health_check_reports_liveness():
    healthy = make_client(FakeToolServer())
    assert await healthy.health_check() is True

    failing = FakeToolServer(responses={"ping": [ToolError(ToolErrorCode.REQUEST_FAILED, "down")]})
    sleep = SleepRecorder()
    unhealthy = make_client(failing, sleep=sleep)
    assert await unhealthy.health_check() is False
    assert failing.call_count("ping") == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_stats_track_attempts_and_last_error():
    server = FakeToolServer(open_errors=1)
    client = make_client(server, max_retries=2)
    await client.call("analyzeCode")
    stats = client.get_stats()
    assert stats["server_name"] == "abap-analyzer"
    assert stats["status"] == "CONNECTED"
    assert stats["connection_attempts"] == 2
    assert stats["retry_count"] == 1
