from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .context import current_session_id
from .credentials import CredentialSet
from .errors import CredentialsRequired
from .pipedrive import PipedriveClients

logger = logging.getLogger("pipedrive_mcp.sessions")

ClientFactory = Callable[[CredentialSet], PipedriveClients]


def new_session_id() -> str:
    return uuid.uuid4().hex


def short_id(session_id: Optional[str]) -> str:
    if not session_id:
        return "-"
    return f"{session_id[:8]}..." if len(session_id) > 8 else session_id


@dataclass(frozen=True)
class Session:
    session_id: str
    credentials: CredentialSet
    clients: PipedriveClients
    created_at: float = field(default_factory=time.time)


class SessionStore:
    """
    Session id -> bound credentials and upstream clients.

    Sessions are sticky: once created, later credentials for the same id are
    ignored by `resolve`. `rebind` replaces a session wholesale (release, then
    create) and is only used by the SSE message path. All bookkeeping is
    synchronous and guarded by one lock, so check-and-create is atomic.
    """

    def __init__(self, client_factory: ClientFactory) -> None:
        self._client_factory = client_factory
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def _create(self, session_id: str, credentials: CredentialSet) -> Session:
        session = Session(
            session_id=session_id,
            credentials=credentials,
            clients=self._client_factory(credentials),
        )
        self._sessions[session_id] = session
        return session

    def resolve(self, session_id: str, credentials: Optional[CredentialSet]) -> Session:
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing
            if credentials is None:
                raise CredentialsRequired()
            session = self._create(session_id, credentials)
        logger.info(
            "Session created",
            extra={"session": short_id(session_id), "domain": credentials.domain},
        )
        return session

    def lookup(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        with self._lock:
            return self._sessions.get(session_id)

    def rebind(self, session_id: str, credentials: CredentialSet) -> Session:
        with self._lock:
            self._sessions.pop(session_id, None)
            session = self._create(session_id, credentials)
        logger.info(
            "Session rebound",
            extra={"session": short_id(session_id), "domain": credentials.domain},
        )
        return session

    def release(self, session_id: str) -> None:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("Session released", extra={"session": short_id(session_id)})

    def current(self) -> Session:
        """Session of the running task; raises CredentialsRequired if none is bound."""
        session = self.lookup(current_session_id())
        if session is None:
            raise CredentialsRequired()
        return session
