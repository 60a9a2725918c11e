import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import DEFAULT_HEALTH_CHECK_INTERVAL_MS, ToolServerConfig
from .tool_client import ToolClient, ToolError, ToolResponse, utc_now

logger = logging.getLogger("uvicorn.error")


class UnknownServerError(KeyError):
    def __init__(self, name: str, available: Iterable[str]):
        self.name = name
        self.available = sorted(available)
        super().__init__(name)

    def __str__(self) -> str:
        listed = ", ".join(self.available) or "none"
        return f"Tool server '{self.name}' not found. Available servers: {listed}"


@dataclass
class ServerHealth:
    name: str
    status: str
    healthy: bool
    last_check: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ClientFactory = Callable[[ToolServerConfig], ToolClient]


class ToolOrchestrator:
    """Owns one ToolClient per configured tool server."""

    def __init__(
        self,
        configs: List[ToolServerConfig],
        *,
        auto_connect: bool = True,
        health_check_interval_ms: int = DEFAULT_HEALTH_CHECK_INTERVAL_MS,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.auto_connect = auto_connect
        self.health_check_interval_ms = health_check_interval_ms
        factory = client_factory or ToolClient
        self._clients: Dict[str, ToolClient] = {}
        for config in configs:
            if config.name in self._clients:
                raise ValueError(f"Duplicate tool server name: {config.name}")
            self._clients[config.name] = factory(config)
        self.server_health: Dict[str, ServerHealth] = {
            name: ServerHealth(name=name, status=client.state.value, healthy=False)
            for name, client in self._clients.items()
        }
        self._health_stop = asyncio.Event()
        self._health_task: Optional[asyncio.Task] = None

    @property
    def server_names(self) -> List[str]:
        return list(self._clients.keys())

    def has_server(self, name: Optional[str]) -> bool:
        return bool(name) and name in self._clients

    def get_client(self, name: str) -> ToolClient:
        client = self._clients.get(name)
        if client is None:
            raise UnknownServerError(name, self._clients.keys())
        return client

    async def start(self) -> Dict[str, ToolError]:
        failures: Dict[str, ToolError] = {}
        if self.auto_connect:
            failures = await self.connect_all()
        if self.health_check_interval_ms > 0 and self._health_task is None:
            self._health_stop.clear()
            self._health_task = asyncio.create_task(self._health_loop())
        return failures

    async def stop(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None:
            self._health_stop.set()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.disconnect_all()

    async def connect_all(self) -> Dict[str, ToolError]:
        """Connect every client; one unreachable server never blocks the others."""

        async def _connect(client: ToolClient) -> Optional[ToolError]:
            try:
                await client.connect()
            except ToolError as exc:
                return exc
            return None

        clients = list(self._clients.values())
        results = await asyncio.gather(*(_connect(client) for client in clients))
        failures: Dict[str, ToolError] = {}
        for client, error in zip(clients, results):
            self._record_health(client, healthy=error is None, error=error.message if error else None)
            if error is not None:
                failures[client.name] = error
        if failures:
            logger.warning("Tool servers unavailable: %s", ", ".join(sorted(failures)))
        return failures

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(client.disconnect() for client in self._clients.values()))
        for client in self._clients.values():
            self._record_health(client, healthy=False, error=None)

    async def reconnect_server(self, name: str) -> bool:
        client = self.get_client(name)
        await client.disconnect()
        try:
            await client.connect()
        except ToolError as exc:
            self._record_health(client, healthy=False, error=exc.message)
            return False
        self._record_health(client, healthy=True, error=None)
        return True

    async def call_tool(
        self,
        server: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ToolResponse:
        return await self.get_client(server).call(method, params, context)

    async def perform_health_checks(self) -> Dict[str, ServerHealth]:
        async def _check(client: ToolClient) -> None:
            if client.busy:
                # An in-flight call already proves or disproves liveness; do not queue a ping behind it.
                return
            healthy = await client.health_check()
            error = None
            if not healthy and client.last_error is not None:
                error = client.last_error.message
            self._record_health(client, healthy=healthy, error=error)

        await asyncio.gather(*(_check(client) for client in self._clients.values()))
        return dict(self.server_health)

    async def _health_loop(self) -> None:
        interval_s = self.health_check_interval_ms / 1000
        while not self._health_stop.is_set():
            try:
                await asyncio.wait_for(self._health_stop.wait(), timeout=interval_s)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.perform_health_checks()
            except Exception as exc:
                logger.warning("Tool health check round failed: %s", exc)

    def _record_health(self, client: ToolClient, *, healthy: bool, error: Optional[str]) -> None:
        self.server_health[client.name] = ServerHealth(
            name=client.name,
            status=client.state.value,
            healthy=healthy,
            last_check=utc_now(),
            last_error=error,
        )

    def is_server_available(self, name: str) -> bool:
        health = self.server_health.get(name)
        client = self._clients.get(name)
        return bool(health and health.healthy and client and client.is_connected)

    def available_servers(self) -> List[str]:
        return [name for name in self._clients if self.is_server_available(name)]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_servers": len(self._clients),
            "available_servers": len(self.available_servers()),
            "health_checks_running": self._health_task is not None,
            "servers": {name: client.get_stats() for name, client in self._clients.items()},
            "health": {name: health.to_dict() for name, health in self.server_health.items()},
        }
