"""
SQLAlchemy-backed challenge repository.

Each save() upserts the challenge row in its own session and commits, so a
restarted process sees exactly the last state the coordinator persisted.
"""

import json
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from poloc.core.coordination.repository import ChallengeRepository
from poloc.core.coordination.state import ChallengePhase, ChallengeState
from poloc.core.errors import PolocError, ErrorCode
from poloc.storage.database import DATABASE_URL, create_db_engine, create_session_factory, init_db
from poloc.storage.models import ChallengeRecord

logger = logging.getLogger(__name__)

TERMINAL_PHASES = [p.value for p in ChallengePhase if p.is_terminal]


class SqlChallengeRepository(ChallengeRepository):
    def __init__(self, url: str = DATABASE_URL, engine=None):
        self.engine = engine or create_db_engine(url)
        init_db(self.engine)
        self.SessionLocal = create_session_factory(self.engine)

    def get(self, challenge_id: str) -> Optional[ChallengeState]:
        db = self.SessionLocal()
        try:
            record = db.get(ChallengeRecord, challenge_id)
            return self._to_state(record) if record else None
        finally:
            db.close()

    def save(self, state: ChallengeState):
        db = self.SessionLocal()
        try:
            record = db.get(ChallengeRecord, state.challenge_id)
            if record is None:
                record = ChallengeRecord(id=state.challenge_id, created_at=state.created_at)
                db.add(record)
            record.phase = state.phase.value
            record.claimed_lat = state.claimed_location.latitude
            record.claimed_lon = state.claimed_location.longitude
            record.deadline = state.deadline
            record.voting_deadline = state.voting_deadline
            record.expires_at = state.expires_at
            record.archived = state.archived
            record.payload = json.dumps(state.to_dict())
            record.updated_at = state.updated_at
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to persist challenge {state.challenge_id[:8]}: {e}")
            raise PolocError(ErrorCode.INTERNAL_ERROR, f"Failed to persist challenge: {e}") from e
        finally:
            db.close()

    def delete(self, challenge_id: str) -> bool:
        db = self.SessionLocal()
        try:
            deleted = db.query(ChallengeRecord).filter(ChallengeRecord.id == challenge_id).delete()
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def list_active(self) -> List[ChallengeState]:
        db = self.SessionLocal()
        try:
            records = db.query(ChallengeRecord).filter(
                ChallengeRecord.phase.notin_(TERMINAL_PHASES),
                ChallengeRecord.archived.is_(False),
            ).order_by(ChallengeRecord.created_at).all()
            return [self._to_state(r) for r in records]
        finally:
            db.close()

    def list_archived(self) -> List[ChallengeState]:
        db = self.SessionLocal()
        try:
            records = db.query(ChallengeRecord).filter(
                ChallengeRecord.archived.is_(True)
            ).order_by(ChallengeRecord.created_at).all()
            return [self._to_state(r) for r in records]
        finally:
            db.close()

    @staticmethod
    def _to_state(record: ChallengeRecord) -> ChallengeState:
        return ChallengeState.from_dict(json.loads(record.payload))
