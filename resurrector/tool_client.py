"""Resilient client for one external tool server.

A tool server is a child process speaking newline-delimited JSON-RPC 2.0 over
stdin/stdout. ``ToolClient`` owns its connection lifecycle and exposes
``call()``, which bounds every request by the configured timeout, retries
retryable failures with exponential backoff and always returns a
``ToolResponse`` instead of raising.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import ToolServerConfig

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 1000
BACKOFF_MAX_MS = 10000
_STREAM_LIMIT = 16 * 1024 * 1024
_TERMINATE_TIMEOUT_S = 5.0


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def backoff_delay_ms(attempt: int) -> int:
    """Delay after the given failed attempt (1-based)."""
    return min(BACKOFF_BASE_MS * (2 ** (attempt - 1)), BACKOFF_MAX_MS)


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    RECONNECTING = "RECONNECTING"


class ToolErrorCode(str, Enum):
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMEOUT = "TIMEOUT"
    REQUEST_FAILED = "REQUEST_FAILED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"


class ToolError(Exception):
    def __init__(
        self,
        code: ToolErrorCode,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


@dataclass
class ToolResponse:
    """Result of one logical call: either ``data`` or ``error`` is set."""

    success: bool
    data: Any = None
    error: Optional[ToolError] = None
    duration_ms: int = 0
    timestamp: str = field(default_factory=utc_now)

    @classmethod
    def ok(cls, data: Any, duration_ms: int = 0) -> "ToolResponse":
        return cls(success=True, data=data, duration_ms=duration_ms)

    @classmethod
    def err(cls, error: ToolError, duration_ms: int = 0) -> "ToolResponse":
        return cls(success=False, error=error, duration_ms=duration_ms)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "duration": self.duration_ms,
            "timestamp": self.timestamp,
        }
        if self.success:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


class StdioTransport:
    """JSON-RPC over the stdio pipes of a child process."""

    def __init__(self, config: ToolServerConfig):
        self.config = config
        self.process: Optional[asyncio.subprocess.Process] = None
        self._next_id = 0

    @property
    def is_open(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def open(self) -> None:
        env = {**os.environ, **self.config.env}
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ToolError(
                ToolErrorCode.CONNECTION_FAILED,
                f"Could not start tool server {self.config.name}: {exc}",
                details={"command": self.config.command, "args": list(self.config.args)},
            ) from exc

    async def request(self, method: str, params: Dict[str, Any], context: Dict[str, Any]) -> Any:
        if not self.is_open or self.process is None:
            raise ToolError(ToolErrorCode.CONNECTION_FAILED, f"Tool server {self.config.name} is not running")
        assert self.process.stdin is not None and self.process.stdout is not None
        self._next_id += 1
        request_id = self._next_id
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        if context:
            message["context"] = context
        try:
            self.process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ToolError(
                ToolErrorCode.CONNECTION_FAILED, f"Lost connection to {self.config.name}: {exc}"
            ) from exc

        while True:
            line = await self.process.stdout.readline()
            if not line:
                raise ToolError(
                    ToolErrorCode.CONNECTION_FAILED,
                    f"Tool server {self.config.name} closed its output",
                    details={"returncode": self.process.returncode},
                )
            try:
                reply = json.loads(line)
            except ValueError:
                # Servers may log to stdout; only JSON-RPC frames matter.
                continue
            if not isinstance(reply, dict) or reply.get("id") != request_id:
                # Late reply to a request that already timed out.
                continue
            if "error" in reply and reply["error"] is not None:
                err = reply["error"] if isinstance(reply["error"], dict) else {"message": str(reply["error"])}
                data = err.get("data") if isinstance(err.get("data"), dict) else {}
                raise ToolError(
                    ToolErrorCode.REQUEST_FAILED,
                    str(err.get("message") or "Request failed"),
                    details={"method": method, "server_code": err.get("code"), "data": data},
                    retryable=bool(data.get("retryable", True)),
                )
            return reply.get("result")

    async def close(self) -> None:
        process, self.process = self.process, None
        if process is None or process.returncode is not None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=_TERMINATE_TIMEOUT_S)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()


TransportFactory = Callable[[ToolServerConfig], Any]
SleepFn = Callable[[float], Awaitable[Any]]


class ToolClient:
    def __init__(
        self,
        config: ToolServerConfig,
        *,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.config = config
        self.state = ConnectionState.DISCONNECTED
        self.connection_attempts = 0
        self.retry_count = 0
        self._transport_factory = transport_factory or StdioTransport
        self._transport: Any = None
        self._sleep = sleep or asyncio.sleep
        self._last_error: Optional[ToolError] = None
        self._call_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def last_error(self) -> Optional[ToolError]:
        return self._last_error

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def busy(self) -> bool:
        return self._call_lock.locked()

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.state == ConnectionState.CONNECTED:
                return
            if self.state != ConnectionState.RECONNECTING:
                self.state = ConnectionState.CONNECTING
            self.connection_attempts += 1
            transport = self._transport_factory(self.config)
            try:
                await transport.open()
            except Exception as exc:
                self.state = ConnectionState.ERROR
                if isinstance(exc, ToolError) and exc.code == ToolErrorCode.CONNECTION_FAILED:
                    error = exc
                else:
                    error = ToolError(
                        ToolErrorCode.CONNECTION_FAILED,
                        f"Failed to connect to {self.name}: {exc}",
                        details={"command": self.config.command},
                    )
                self._last_error = error
                logger.warning("Tool server %s connection failed: %s", self.name, error.message)
                raise error from exc
            self._transport = transport
            self.state = ConnectionState.CONNECTED
            logger.info("Connected to tool server %s", self.name)

    async def disconnect(self) -> None:
        if self.state == ConnectionState.DISCONNECTED and self._transport is None:
            return
        transport, self._transport = self._transport, None
        try:
            if transport is not None:
                await transport.close()
        except Exception as exc:
            logger.warning("Error while disconnecting from %s: %s", self.name, exc)
        finally:
            self.state = ConnectionState.DISCONNECTED

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as exc:
            logger.warning("Error closing broken channel to %s: %s", self.name, exc)

    async def _ensure_connected(self, retrying: bool) -> None:
        if self.state == ConnectionState.CONNECTED and self._transport is not None:
            return
        if retrying:
            self.state = ConnectionState.RECONNECTING
            logger.info("Reconnecting to tool server %s", self.name)
        await self.connect()

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        *,
        max_retries: Optional[int] = None,
    ) -> ToolResponse:
        started = time.monotonic()
        attempts = max(1, self.config.max_retries if max_retries is None else max_retries)
        timeout_s = self.config.timeout / 1000
        last_error: Optional[ToolError] = None

        async with self._call_lock:
            for attempt in range(1, attempts + 1):
                if attempt > 1:
                    self.retry_count += 1
                    await self._sleep(backoff_delay_ms(attempt - 1) / 1000)
                try:
                    await self._ensure_connected(retrying=attempt > 1)
                    data = await asyncio.wait_for(
                        self._transport.request(method, params or {}, context or {}),
                        timeout=timeout_s,
                    )
                    return ToolResponse.ok(data, duration_ms=_elapsed_ms(started))
                except asyncio.TimeoutError:
                    last_error = ToolError(
                        ToolErrorCode.TIMEOUT,
                        f"Request {method} to {self.name} timed out after {self.config.timeout}ms",
                        details={"method": method, "timeout": self.config.timeout},
                    )
                except ToolError as exc:
                    last_error = exc
                    if exc.code == ToolErrorCode.CONNECTION_FAILED:
                        self.state = ConnectionState.ERROR
                        await self._drop_transport()
                except Exception as exc:
                    last_error = ToolError(
                        ToolErrorCode.REQUEST_FAILED,
                        f"Request {method} to {self.name} failed: {exc}",
                        details={"method": method},
                    )
                self._last_error = last_error
                logger.warning(
                    "Tool call %s.%s failed (attempt %s/%s): %s",
                    self.name,
                    method,
                    attempt,
                    attempts,
                    last_error.message,
                )
                if not last_error.retryable:
                    return ToolResponse.err(last_error, duration_ms=_elapsed_ms(started))

        assert last_error is not None
        exhausted = ToolError(
            ToolErrorCode.MAX_RETRIES_EXCEEDED,
            f"{self.name}.{method} failed after {attempts} attempts: {last_error.message}",
            details={"attempts": attempts, "last_error": last_error.to_dict()},
            retryable=False,
        )
        self._last_error = exhausted
        return ToolResponse.err(exhausted, duration_ms=_elapsed_ms(started))

    async def health_check(self) -> bool:
        try:
            response = await self.call("ping", max_retries=1)
        except Exception as exc:
            logger.warning("Health check for %s raised: %s", self.name, exc)
            return False
        return response.success

    def get_stats(self) -> Dict[str, Any]:
        return {
            "server_name": self.name,
            "status": self.state.value,
            "connection_attempts": self.connection_attempts,
            "retry_count": self.retry_count,
            "last_error": self._last_error.to_dict() if self._last_error else None,
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
