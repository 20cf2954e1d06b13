"""
org_scope.exceptions — Tenant-isolation substrate errors.

Every error carries the values needed to debug it as attributes, and a
message that names them.  None of these are caught inside the library;
they propagate to the caller that owns the operation.
"""

from __future__ import annotations


class MalformedIdentifier(ValueError):
    """
    Raised when a value cannot be decoded as a 16-byte packed identifier.

    A programming error: callers pass ids they minted or read from storage,
    so a wrong length means the wrong value was passed.

    Attributes:
        value:  repr of the offending input (truncated).
        reason: why decoding failed.
    """

    def __init__(self, *, value: object, reason: str) -> None:
        self.value = repr(value)[:80]
        self.reason = reason
        super().__init__(f"Malformed packed identifier {self.value}: {reason}")


class UnknownEntityKind(LookupError):
    """Raised by the registry when asked for the code of an unregistered kind."""

    def __init__(self, *, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Entity kind {kind!r} is not registered")


class RegistryConflict(ValueError):
    """Raised when a registry change would reuse, rename or drop an issued code."""


class OrgNumericIdConflict(Exception):
    """
    Raised by an org number store when the uniqueness constraint rejects a
    reservation.  Recoverable: the allocator retries with a fresh value.
    """

    def __init__(self, *, numeric_id: int) -> None:
        self.numeric_id = numeric_id
        super().__init__(f"Org numeric id {numeric_id} is already reserved")


class AllocationExhausted(RuntimeError):
    """Raised when the allocator fails to find a free org numeric id within its bound."""

    def __init__(self, *, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"No free org numeric id found after {attempts} attempt(s)")


class InvariantViolation(Exception):
    """
    Raised when a write would break tenant ownership consistency.

    Attributes:
        table:      Table the write targeted.
        identifier: Row id (UUID string) if one could be read, else None.
        rule:       Which rule failed: "append-only", "entity-type",
                    "ownership", "global-org", "foreign-key" or "shape".
        detail:     Human readable description of the mismatch.
    """

    def __init__(
        self,
        *,
        table: str,
        identifier: str | None,
        rule: str,
        detail: str,
    ) -> None:
        self.table = table
        self.identifier = identifier
        self.rule = rule
        self.detail = detail
        super().__init__(f"{table} row {identifier or '<unknown>'} violates {rule}: {detail}")
