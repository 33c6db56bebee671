"""
HTTP adapter for a ledger service.

Every call is a JSON POST under the challenge resource:

    POST /challenges                         initialize_challenge
    POST /challenges/{id}/stakes             stake
    POST /challenges/{id}/votes              record_vote
    POST /challenges/{id}/finalize           finalize
    POST /challenges/{id}/rewards            distribute_rewards
    POST /challenges/{id}/slashes            slash

The service answers with a LedgerResponse body. A non-2xx status, an
`ok: false` body or a transport error becomes a CollaboratorError carrying
the ledger's error name (InsufficientStake, DuplicateStake, ...).
"""

import os
import logging
from typing import List, Optional

import requests
from pydantic import BaseModel, ValidationError as SchemaError

from poloc.collaborators.ledger import LedgerClient
from poloc.core.errors import CollaboratorError, ErrorCode
from poloc.schemas import (
    InitializeChallengeRequest,
    LocationSchema,
    StakeRequest,
    VoteRequest,
    FinalizeRequest,
    DistributeRewardsRequest,
    SlashRequest,
    LedgerResponse,
)

logger = logging.getLogger(__name__)

LEDGER_URL = os.getenv("POLOC_LEDGER_URL", "http://localhost:8899")
LEDGER_TIMEOUT_S = float(os.getenv("POLOC_LEDGER_TIMEOUT", "10"))


class HttpLedgerClient(LedgerClient):
    def __init__(self, base_url: Optional[str] = None, timeout: float = LEDGER_TIMEOUT_S,
                 session: Optional[requests.Session] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or LEDGER_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def _post(self, operation: str, path: str, body: BaseModel) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.post(url, json=body.model_dump(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"[LEDGER] {operation} unreachable: {e}")
            raise CollaboratorError("ledger", operation, str(e), ErrorCode.LEDGER_UNAVAILABLE) from e

        try:
            parsed = LedgerResponse.model_validate(resp.json())
        except (ValueError, SchemaError):
            parsed = None

        if resp.status_code >= 400 or parsed is None or not parsed.ok:
            reason = (parsed.error if parsed and parsed.error else None) or f"HTTP {resp.status_code}"
            code = ErrorCode.LEDGER_UNAVAILABLE if resp.status_code >= 500 else ErrorCode.LEDGER_REJECTED
            raise CollaboratorError("ledger", operation, reason, code,
                                    {"status": resp.status_code, "error": reason})
        return parsed.data

    def initialize_challenge(self, challenge_id, claimed_location, duration_s, reward_pool, authority_key):
        body = InitializeChallengeRequest(
            challenge_id=challenge_id,
            claimed_location=LocationSchema(**claimed_location.to_dict()),
            duration_s=duration_s,
            reward_pool=reward_pool,
            authority_key=authority_key,
        )
        return self._post("initialize_challenge", "/challenges", body)

    def stake(self, challenge_id, participant_id, amount):
        body = StakeRequest(participant_id=participant_id, amount=amount)
        return self._post("stake", f"/challenges/{challenge_id}/stakes", body)

    def record_vote(self, challenge_id, participant_id, is_valid, uncertainty_m, min_delay_ms):
        body = VoteRequest(
            participant_id=participant_id,
            is_valid=is_valid,
            uncertainty_m=uncertainty_m,
            min_delay_ms=min_delay_ms,
        )
        return self._post("record_vote", f"/challenges/{challenge_id}/votes", body)

    def finalize(self, challenge_id, decision):
        return self._post("finalize", f"/challenges/{challenge_id}/finalize", FinalizeRequest(**decision))

    def distribute_rewards(self, challenge_id, recipients: Optional[List[str]] = None):
        body = DistributeRewardsRequest(recipients=list(recipients or []))
        return self._post("distribute_rewards", f"/challenges/{challenge_id}/rewards", body)

    def slash(self, challenge_id, participant_id):
        return self._post("slash", f"/challenges/{challenge_id}/slashes", SlashRequest(participant_id=participant_id))
