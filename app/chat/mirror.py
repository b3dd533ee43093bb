from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from app.schemas.chat import ChatMessageRead, ChatSessionRead

logger = logging.getLogger(__name__)


class MirrorSnapshot(BaseModel):
    identity_key: str
    current_session_id: str | None = None
    sessions: list[ChatSessionRead] = Field(default_factory=list)
    messages: list[ChatMessageRead] = Field(default_factory=list)


class SessionMirror:
    """
    Best-effort local copy of the chat state, used to paint the UI before the
    store answers. The store always wins; a broken mirror is only logged.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._snapshot: MirrorSnapshot | None = None

    def save(self, snapshot: MirrorSnapshot) -> None:
        self._snapshot = snapshot
        if self.path is None:
            return
        try:
            self.path.write_text(snapshot.model_dump_json(), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write chat mirror %s: %s", self.path, exc)

    def load(self) -> MirrorSnapshot | None:
        if self.path is None or not self.path.exists():
            return self._snapshot
        try:
            return MirrorSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable chat mirror %s: %s", self.path, exc)
            return None

    def clear(self) -> None:
        self._snapshot = None
        if self.path is None:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove chat mirror %s: %s", self.path, exc)
