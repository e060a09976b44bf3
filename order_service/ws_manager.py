# ws_manager.py
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from order_service import metrics

logger = logging.getLogger("order-service.ws")


@dataclass(frozen=True)
class Session:
    connection_id: str
    user_id: str
    role: str
    restaurant_id: Optional[str] = None
    groups: FrozenSet[str] = frozenset()
    channel: Any = field(default=None, compare=False)  # anything with async send_json()


def default_groups(role: str, restaurant_id: Optional[str] = None) -> Set[str]:
    groups = set()
    if role == "driver":
        groups.add("drivers")
    elif role == "restaurant" and restaurant_id:
        groups.add(f"restaurant:{restaurant_id}")
    elif role == "admin":
        groups.add("admins")
    return groups


class SessionRegistry:
    """
    Live connections indexed by connection id, user id and group.

    One registry per running app; build it where the app is built and pass
    it to whatever needs to address sessions.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._by_user: Dict[str, Set[str]] = defaultdict(set)
        self._by_group: Dict[str, Set[str]] = defaultdict(set)
        self._lock = threading.RLock()

    def register(
        self,
        connection_id: str,
        user_id: str,
        role: str,
        groups: Iterable[str] = (),
        restaurant_id: Optional[str] = None,
        channel: Any = None,
    ) -> Session:
        role = getattr(role, "value", role)
        all_groups = frozenset(set(groups) | default_groups(role, restaurant_id))
        session = Session(connection_id, user_id, role, restaurant_id, all_groups, channel)
        with self._lock:
            self._remove(connection_id)
            self._sessions[connection_id] = session
            self._by_user[user_id].add(connection_id)
            for group in all_groups:
                self._by_group[group].add(connection_id)
            total = len(self._sessions)
        metrics.ACTIVE_SESSIONS.set(total)
        logger.info(f"[WS CONNECT] {role} {user_id} on {connection_id} groups={sorted(all_groups)}. Total sessions: {total}")
        return session

    def unregister(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            session = self._remove(connection_id)
            total = len(self._sessions)
        metrics.ACTIVE_SESSIONS.set(total)
        if session:
            logger.info(f"[WS DISCONNECT] {session.role} {session.user_id} left {connection_id}. Total sessions: {total}")
        return session

    def resolve_user(self, user_id: str) -> List[str]:
        with self._lock:
            return list(self._by_user.get(user_id, ()))

    def resolve_group(self, name: str) -> List[str]:
        with self._lock:
            return list(self._by_group.get(name, ()))

    def get(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(connection_id)

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def _remove(self, connection_id: str) -> Optional[Session]:
        # caller holds the lock
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None
        self._discard(self._by_user, session.user_id, connection_id)
        for group in session.groups:
            self._discard(self._by_group, group, connection_id)
        return session

    @staticmethod
    def _discard(index: Dict[str, Set[str]], key: str, connection_id: str):
        members = index.get(key)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del index[key]
