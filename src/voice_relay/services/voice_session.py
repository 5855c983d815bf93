import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from voice_relay.services.tts import SynthesisHandle

logger = logging.getLogger(__name__)

MAX_HISTORY = 12  # 6 user/assistant exchanges


@dataclass
class VoiceSession:
    """Conversation state for a single connection."""

    connection_id: str
    history: List[Dict[str, str]] = field(default_factory=list)
    active: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def update_activity(self):
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(timezone.utc)


class SessionRegistry:
    """Maps connection ids to sessions and to their one synthesis handle."""

    def __init__(self, max_history: int = MAX_HISTORY):
        self.max_history = max_history
        self._sessions: Dict[str, VoiceSession] = {}
        self._handles: Dict[str, SynthesisHandle] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, connection_id: str) -> Optional[VoiceSession]:
        """Retrieve a session by connection id."""
        return self._sessions.get(connection_id)

    def create(self, connection_id: str) -> VoiceSession:
        """Create (or replace) the session for a connection."""
        session = VoiceSession(connection_id=connection_id)
        self._sessions[connection_id] = session
        logger.debug(f"Session created: {connection_id}")
        return session

    def delete(self, connection_id: str):
        """Remove a session."""
        if self._sessions.pop(connection_id, None) is not None:
            logger.debug(f"Session removed: {connection_id}")

    def append_history(self, session: VoiceSession, role: str, content: str):
        """Append one message and evict the oldest beyond ``max_history``."""
        session.history.append({"role": role, "content": content})
        overflow = len(session.history) - self.max_history
        if overflow > 0:
            del session.history[:overflow]
        session.update_activity()

    def get_handle(self, connection_id: str) -> Optional[SynthesisHandle]:
        return self._handles.get(connection_id)

    def set_handle(self, connection_id: str, handle: SynthesisHandle):
        """Register ``handle``, stopping any previous one first."""
        previous = self._handles.get(connection_id)
        if previous is not None and previous is not handle:
            previous.stop()
        self._handles[connection_id] = handle

    def clear_handle(self, connection_id: str, handle: Optional[SynthesisHandle] = None):
        """Forget the handle; with ``handle`` given, only if it is still current."""
        if handle is not None and self._handles.get(connection_id) is not handle:
            return
        self._handles.pop(connection_id, None)

    def stop_handle(self, connection_id: str) -> bool:
        """Stop and forget the connection's handle. Returns whether one existed."""
        handle = self._handles.pop(connection_id, None)
        if handle is None:
            return False
        try:
            handle.stop()
        except Exception as e:
            logger.warning(f"Error stopping synthesis for {connection_id}: {e}")
        return True

    def stop_all(self):
        """Stop every registered handle (shutdown)."""
        for connection_id in list(self._handles):
            self.stop_handle(connection_id)


__all__ = ["MAX_HISTORY", "SessionRegistry", "VoiceSession"]
