"""
Challenge repositories keyed by challenge ID.

The coordinator saves its ChallengeState after every mutating operation and
loads it through the same interface on restart. The in-memory repository
stores serialized snapshots, so callers never share a live object with it.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from poloc.core.coordination.state import ChallengeState

logger = logging.getLogger(__name__)


class ChallengeRepository(ABC):
    @abstractmethod
    def get(self, challenge_id: str) -> Optional[ChallengeState]:
        ...

    @abstractmethod
    def save(self, state: ChallengeState):
        ...

    @abstractmethod
    def delete(self, challenge_id: str) -> bool:
        ...

    @abstractmethod
    def list_active(self) -> List[ChallengeState]:
        """Challenges that are neither terminal nor archived."""

    @abstractmethod
    def list_archived(self) -> List[ChallengeState]:
        ...

    def exists(self, challenge_id: str) -> bool:
        return self.get(challenge_id) is not None


class InMemoryChallengeRepository(ChallengeRepository):
    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, challenge_id: str) -> Optional[ChallengeState]:
        with self._lock:
            record = self._records.get(challenge_id)
            if record is None:
                return None
            return ChallengeState.from_dict(copy.deepcopy(record))

    def save(self, state: ChallengeState):
        record = state.to_dict()
        with self._lock:
            self._records[state.challenge_id] = record

    def delete(self, challenge_id: str) -> bool:
        with self._lock:
            return self._records.pop(challenge_id, None) is not None

    def list_active(self) -> List[ChallengeState]:
        return [s for s in self._all() if not s.phase.is_terminal and not s.archived]

    def list_archived(self) -> List[ChallengeState]:
        return [s for s in self._all() if s.archived]

    def _all(self) -> List[ChallengeState]:
        with self._lock:
            records = copy.deepcopy(list(self._records.values()))
        return [ChallengeState.from_dict(r) for r in records]

    def __len__(self) -> int:
        return len(self._records)
