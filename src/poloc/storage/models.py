from sqlalchemy import Boolean, Column, String, Float, Text

from poloc.storage.database import Base


class ChallengeRecord(Base):
    """
    One row per challenge. The full ChallengeState lives in `payload` as
    JSON; the other columns are copies kept for querying.
    """
    __tablename__ = "challenges"

    id = Column(String, primary_key=True, index=True)
    phase = Column(String, index=True, nullable=False)
    claimed_lat = Column(Float, nullable=False)
    claimed_lon = Column(Float, nullable=False)
    deadline = Column(Float, nullable=False)
    voting_deadline = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    archived = Column(Boolean, default=False, index=True)
    payload = Column(Text, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
