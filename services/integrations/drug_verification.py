"""
RxNorm drug-name verification
Best-match lookup against the NLM RxNav approximateTerm endpoint
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from shared.config import Settings, get_settings
from shared.retry import call_with_retries


logger = logging.getLogger(__name__)

AMBIGUOUS_CONFIDENCE = 0.75
VERIFICATION_ATTEMPTS = 3


class RxNavUnavailable(Exception):
    """RxNav answered with a throttling or server error worth retrying."""


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    AMBIGUOUS = "ambiguous"
    UNVERIFIED = "unverified"


class DrugMatch(BaseModel):
    query: str
    name: Optional[str] = None
    rxcui: Optional[str] = None
    confidence: float = 0.0
    status: VerificationStatus = VerificationStatus.UNVERIFIED

    @property
    def is_verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED


def _confidence(raw_score: Any) -> float:
    # RxNav scores are on a 0-100 scale.
    try:
        score = float(raw_score)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(score, 100.0)) / 100.0


class RxNormVerifier:
    """
    Synchronous RxNav client used while creating medication commands.

    Transport failures, throttling and 5xx answers are retried up to three
    times with exponential backoff. Other 4xx answers are not retried. Any
    remaining failure yields an ``unverified`` match instead of raising.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        settings: Optional[Settings] = None,
        base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.RXNORM_API_URL).rstrip("/")
        self._client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout or settings.RXNORM_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
        )
        self.base_delay = base_delay
        self.sleep = sleep
        self._cache: Dict[str, DrugMatch] = {}

    def close(self) -> None:
        self._client.close()

    def _fetch(self, term: str) -> Dict[str, Any]:
        response = self._client.get("/approximateTerm.json", params={"term": term, "maxEntries": 1})
        if response.status_code == 429 or response.is_server_error:
            raise RxNavUnavailable(f"RxNav returned {response.status_code}")
        response.raise_for_status()
        return response.json()

    def verify(self, name: str) -> DrugMatch:
        term = (name or "").strip()
        if not term:
            return DrugMatch(query=name or "")
        key = term.lower()
        if key in self._cache:
            return self._cache[key]

        try:
            data = call_with_retries(
                lambda: self._fetch(term),
                attempts=VERIFICATION_ATTEMPTS,
                base_delay=self.base_delay,
                retry_on=(httpx.TransportError, RxNavUnavailable),
                description=f"RxNorm lookup for {term!r}",
                sleep=self.sleep,
            )
        except (httpx.HTTPError, RxNavUnavailable, ValueError) as e:
            logger.warning("Drug verification unavailable for %r: %s", term, e)
            return DrugMatch(query=term)

        candidates = (data.get("approximateGroup") or {}).get("candidate") or []
        if not candidates:
            match = DrugMatch(query=term)
        else:
            best = candidates[0]
            confidence = _confidence(best.get("score"))
            match = DrugMatch(
                query=term,
                name=best.get("name") or None,
                rxcui=best.get("rxcui") or None,
                confidence=confidence,
                status=(
                    VerificationStatus.VERIFIED
                    if confidence >= AMBIGUOUS_CONFIDENCE
                    else VerificationStatus.AMBIGUOUS
                ),
            )

        self._cache[key] = match
        return match
