import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from logging_config import get_logger
from schemas.chat import OnlineUser, UserIdentity

logger = get_logger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    connection_id: str
    identity: UserIdentity
    generation: int
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    def to_online_user(self) -> OnlineUser:
        return OnlineUser(
            **self.identity.model_dump(),
            connection_id=self.connection_id,
            joined_at=self.joined_at,
        )


class PresenceRegistry:
    """Process-local map between connections and user identities.

    ``userId -> entry`` always points at the most recently identified
    connection for that user. Each identify bumps a per-user generation, and
    a connection going away only clears the user mapping when its own entry
    is still the current one (same connection, same generation), so an old
    socket closing late cannot evict a newer session of the same user. The
    generation counter of a user is dropped once none of their connections
    remain.

    All methods are synchronous and take the registry lock for their whole
    body.
    """

    def __init__(self):
        self._by_connection: Dict[str, PresenceEntry] = {}
        self._by_user: Dict[str, PresenceEntry] = {}
        self._generations: Dict[str, int] = {}
        self._user_connections: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def register(self, connection_id: str, identity: UserIdentity) -> PresenceEntry:
        with self._lock:
            # A connection re-identifying as someone else releases its old entry first
            previous_own = self._by_connection.get(connection_id)
            if previous_own is not None and previous_own.user_id != identity.user_id:
                self._release(previous_own)

            generation = self._generations.get(identity.user_id, 0) + 1
            self._generations[identity.user_id] = generation
            entry = PresenceEntry(connection_id=connection_id, identity=identity, generation=generation)

            evicted = self._by_user.get(identity.user_id)
            if evicted is not None and evicted.connection_id != connection_id:
                logger.info(f"User {identity.user_id} reconnected on {connection_id}, replacing mapping for {evicted.connection_id}")

            self._by_connection[connection_id] = entry
            self._by_user[identity.user_id] = entry
            self._user_connections.setdefault(identity.user_id, set()).add(connection_id)
            logger.debug(f"Registered presence {connection_id} -> {identity.user_id} (generation {generation})")
            return entry

    def unregister(self, connection_id: str) -> bool:
        """Forget a connection. Returns True if the user went offline as a result."""
        with self._lock:
            entry = self._by_connection.pop(connection_id, None)
            if entry is None:
                return False
            return self._release(entry)

    def _release(self, entry: PresenceEntry) -> bool:
        self._by_connection.pop(entry.connection_id, None)
        connections = self._user_connections.get(entry.user_id)
        if connections is not None:
            connections.discard(entry.connection_id)
            if not connections:
                del self._user_connections[entry.user_id]
                self._generations.pop(entry.user_id, None)

        current = self._by_user.get(entry.user_id)
        if current is None or current.connection_id != entry.connection_id or current.generation != entry.generation:
            logger.debug(f"Stale presence for {entry.user_id} on {entry.connection_id} released; user still mapped elsewhere")
            return False
        del self._by_user[entry.user_id]
        logger.debug(f"User {entry.user_id} is now offline")
        return True

    def get(self, connection_id: str) -> Optional[PresenceEntry]:
        with self._lock:
            return self._by_connection.get(connection_id)

    def lookup_user(self, user_id: str) -> Optional[PresenceEntry]:
        with self._lock:
            return self._by_user.get(user_id)

    def connection_for(self, user_id: str) -> Optional[str]:
        entry = self.lookup_user(user_id)
        return entry.connection_id if entry else None

    def is_online(self, user_id: str) -> bool:
        return self.lookup_user(user_id) is not None

    def active_users(self, exclude_user_id: Optional[str] = None) -> List[OnlineUser]:
        with self._lock:
            entries = [entry for user_id, entry in self._by_user.items() if user_id != exclude_user_id]
        entries.sort(key=lambda e: e.joined_at)
        return [entry.to_online_user() for entry in entries]

    def clear(self):
        with self._lock:
            self._by_connection.clear()
            self._by_user.clear()
            self._generations.clear()
            self._user_connections.clear()

    def __len__(self):
        with self._lock:
            return len(self._by_user)
