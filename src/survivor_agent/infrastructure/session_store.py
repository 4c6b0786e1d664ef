import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from survivor_agent.domain.models.session import SessionRecord
from survivor_agent.infrastructure.json_files import read_json_object, write_json_atomic


logger = logging.getLogger(__name__)


class JsonSessionStore:
    """The one durable file the agent depends on: account address, signing material, adventurer id."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[SessionRecord]:
        payload = read_json_object(self.path)
        if payload is None:
            if self.path.exists():
                logger.warning("Ignoring unreadable session file %s", self.path)
            return None
        return SessionRecord.from_mapping(payload)

    def save(self, session: SessionRecord) -> None:
        record = session
        if not record.created_at:
            record = SessionRecord(
                address=session.address,
                adventurer_id=session.adventurer_id,
                private_key=session.private_key,
                entry_point=session.entry_point,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
        write_json_atomic(self.path, record.to_dict())
        logger.info("Session saved", extra={"adventurer_id": record.adventurer_id, "path": str(self.path)})
