import sys
import textwrap

import pytest

from resurrector.config import ToolServerConfig
from resurrector.tool_client import ConnectionState, ToolClient, ToolError, ToolErrorCode
from tests.fakes import SleepRecorder

ECHO_SERVER = textwrap.dedent(
    """
    import json
    import os
    import sys

    for line in sys.stdin:
        msg = json.loads(line)
        if msg["method"] == "fail":
            reply = {
                "jsonrpc": "2.0",
                "id": msg["id"],
                "error": {"code": -32000, "message": "unsupported", "data": {"retryable": False}},
            }
        else:
            print("starting work", flush=True)
            reply = {
                "jsonrpc": "2.0",
                "id": msg["id"],
                "result": {
                    "method": msg["method"],
                    "params": msg.get("params"),
                    "context": msg.get("context"),
                    "marker": os.environ.get("ECHO_MARKER"),
                },
            }
        sys.stdout.write(json.dumps(reply) + "\\n")
        sys.stdout.flush()
    """
)


@pytest.mark.asyncio
async def test_stdio_round_trip_and_server_errors(tmp_path):
    script = tmp_path / "echo_server.py"
    script.write_text(ECHO_SERVER)
    config = ToolServerConfig(
        name="echo",
        command=sys.executable,
        args=[str(script)],
        env={"ECHO_MARKER": "from-config"},
        timeout=10000,
    )
    client = ToolClient(config, sleep=SleepRecorder())
    try:
        response = await client.call("analyzeCode", {"code": "REPORT z."}, {"job_id": "j1"})
        assert response.success is True
        assert response.data["method"] == "analyzeCode"
        assert response.data["params"] == {"code": "REPORT z."}
        assert response.data["context"] == {"job_id": "j1"}
        assert response.data["marker"] == "from-config"

        failed = await client.call("fail")
        assert failed.success is False
        assert failed.error.code == ToolErrorCode.REQUEST_FAILED
        assert failed.error.retryable is False
        assert failed.error.message == "unsupported"

        assert await client.health_check() is True
    finally:
        await client.disconnect()
    assert client.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_missing_command_fails_to_connect(tmp_path):
    config = ToolServerConfig(name="ghost", command=str(tmp_path / "no-such-tool-server"))
    client = ToolClient(config)
    with pytest.raises(ToolError) as excinfo:
        await client.connect()
    assert excinfo.value.code == ToolErrorCode.CONNECTION_FAILED
    assert client.state == ConnectionState.ERROR


@pytest.mark.asyncio
async def test_server_exit_is_a_connection_failure(tmp_path):
    script = tmp_path / "quits.py"
    script.write_text("import sys\nsys.exit(0)\n")
    config = ToolServerConfig(name="quits", command=sys.executable, args=[str(script)], max_retries=1)
    client = ToolClient(config)
    try:
        response = await client.call("analyzeCode")
    finally:
        await client.disconnect()
    assert response.success is False
    assert response.error.details["last_error"]["code"] == "CONNECTION_FAILED"
