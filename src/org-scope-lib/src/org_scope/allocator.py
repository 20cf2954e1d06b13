"""
org_scope.allocator — Org numeric id allocation.

Each tenant gets a random numeric id in [1, 2^31-2], embedded in the first
four bytes of every identifier it owns.  The allocator samples and asks the
authoritative store whether the value is taken.  The check is not atomic:
the store's uniqueness constraint is the real guarantee, and a lost race
surfaces as OrgNumericIdConflict from reserve(), which is retried with a
fresh value.

Every sample counts against max_attempts, whether it was already in use or
lost a reservation race.  With ~2.1 billion values exhaustion is practically
unreachable, but the loop always terminates.
"""

from __future__ import annotations

import random
import secrets
from collections.abc import Callable

from aws_lambda_powertools import Logger

from org_scope.exceptions import AllocationExhausted, OrgNumericIdConflict
from org_scope.ids import MAX_ORG_NUMERIC_ID, MIN_ORG_NUMERIC_ID

logger = Logger(service="org-scope")

DEFAULT_MAX_ATTEMPTS = 20

IsUsed = Callable[[int], bool]
Reserve = Callable[[int], None]


class OrgNumericIdAllocator:
    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._max_attempts = max_attempts
        self._rng = rng or secrets.SystemRandom()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _sample(self) -> int:
        return self._rng.randint(MIN_ORG_NUMERIC_ID, MAX_ORG_NUMERIC_ID)

    def generate(self, is_used: IsUsed) -> int:
        """Return the first sampled value for which is_used() is false."""
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._sample()
            if not is_used(candidate):
                return candidate
            logger.warning("Org numeric id already in use", numeric_id=candidate, attempt=attempt)
        raise self._exhausted()

    def allocate(self, is_used: IsUsed, reserve: Reserve) -> int:
        """Sample, check and reserve a value, retrying on uniqueness conflicts.

        reserve() must insert the value under the store's uniqueness
        constraint and raise OrgNumericIdConflict if another writer won.
        """
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._sample()
            if is_used(candidate):
                logger.warning(
                    "Org numeric id already in use", numeric_id=candidate, attempt=attempt
                )
                continue
            try:
                reserve(candidate)
            except OrgNumericIdConflict:
                logger.warning(
                    "Org numeric id reservation lost a race; retrying",
                    numeric_id=candidate,
                    attempt=attempt,
                )
                continue
            return candidate
        raise self._exhausted()

    def _exhausted(self) -> AllocationExhausted:
        logger.error("Org numeric id allocation exhausted", attempts=self._max_attempts)
        return AllocationExhausted(attempts=self._max_attempts)
