import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class PresenceRegistry:
    """Online users and their live connections, for one process.

    Owned by the application (``app.state.presence``) and only mutated from the
    event loop, so no locking is needed. Multi-instance deployments need a shared
    registry instead.
    """

    def __init__(self) -> None:
        self._connections: dict[int, list[Connection]] = {}

    def connect(self, user_id: int, connection: Connection) -> bool:
        """Register a connection; returns True when the user just came online."""
        connections = self._connections.setdefault(user_id, [])
        came_online = not connections
        connections.append(connection)
        return came_online

    def disconnect(self, user_id: int, connection: Connection) -> bool:
        """Drop a connection; returns True when the user has no connections left."""
        connections = self._connections.get(user_id)
        if not connections:
            return False
        if connection in connections:
            connections.remove(connection)
        if connections:
            return False
        del self._connections[user_id]
        return True

    def is_online(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def online_user_ids(self) -> list[int]:
        return sorted(self._connections)

    def connections_for(self, user_id: int) -> list[Connection]:
        return list(self._connections.get(user_id, ()))

    async def send_to(self, user_id: int, event: str, data: Any) -> int:
        delivered = 0
        for connection in self.connections_for(user_id):
            try:
                await connection.send_json({"event": event, "data": data})
                delivered += 1
            except Exception:
                logger.warning("Dropping undeliverable event %s for user=%s", event, user_id)
        return delivered

    async def broadcast(self, event: str, data: Any, exclude_user_id: int | None = None) -> None:
        for user_id in self.online_user_ids():
            if user_id != exclude_user_id:
                await self.send_to(user_id, event, data)
