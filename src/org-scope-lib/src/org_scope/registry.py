"""
org_scope.registry — Entity type registry.

Maps entity kind names to the one-byte code stamped into byte 10 of every
packed identifier.  The registry is append-only: a code, once issued, is
never reassigned or removed, so identifiers minted years ago still decode.
Retired kinds are marked deprecated instead of being dropped.

Codes are grouped by domain so gaps and collisions are easy to audit:

    0x01-0x0F  identity / tenancy
    0x10-0x1F  content / data
    0x20-0x2F  access
    0x30-0x3F  collaboration
    0x40-0x4F  analytics
    0x50-0x5F  integrations

ENTITY_TYPES is built once at import time and shared by reference; the
codec, the table map and the verifier all read this one object.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from enum import StrEnum

from org_scope.exceptions import RegistryConflict, UnknownEntityKind

UNKNOWN = "Unknown"
MAX_ENTITY_TYPE_CODE = 0xFF


class EntityScope(StrEnum):
    GLOBAL = "global"  # ids always embed GLOBAL_ORG
    TENANT = "tenant"


@dataclass(frozen=True)
class EntityType:
    name: str
    code: int
    scope: EntityScope = EntityScope.TENANT
    deprecated: bool = False


class EntityTypeRegistry:
    """Immutable, versioned name <-> code table."""

    __slots__ = ("_by_code", "_by_name", "_version")

    def __init__(self, entries: Iterable[EntityType], *, version: int = 1) -> None:
        by_name: dict[str, EntityType] = {}
        by_code: dict[int, EntityType] = {}
        for entry in entries:
            if not 0 <= entry.code <= MAX_ENTITY_TYPE_CODE:
                raise RegistryConflict(f"{entry.name}: code {entry.code} does not fit in one byte")
            if entry.name in by_name:
                raise RegistryConflict(f"Entity kind {entry.name!r} registered twice")
            if entry.code in by_code:
                raise RegistryConflict(
                    f"Code 0x{entry.code:02x} issued to both "
                    f"{by_code[entry.code].name!r} and {entry.name!r}"
                )
            by_name[entry.name] = entry
            by_code[entry.code] = entry
        self._by_name = by_name
        self._by_code = by_code
        self._version = version

    @property
    def version(self) -> int:
        return self._version

    def code_of(self, name: str) -> int:
        """Return the code for a kind.  Unknown kinds are a caller bug and raise."""
        return self.entry(name).code

    def name_of(self, code: int) -> str:
        """Return the kind for a code, or UNKNOWN.  Never raises."""
        entry = self._by_code.get(code)
        return entry.name if entry is not None else UNKNOWN

    def entry(self, name: str) -> EntityType:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownEntityKind(kind=name) from None

    def is_issued(self, code: int) -> bool:
        return code in self._by_code

    def is_global(self, name: str) -> bool:
        return self.entry(name).scope is EntityScope.GLOBAL

    def extend(
        self,
        *entries: EntityType,
        deprecate: Iterable[str] = (),
    ) -> EntityTypeRegistry:
        """Return a new registry (version + 1) with entries appended.

        Existing entries may only change by being deprecated.  Reusing a code,
        or registering an existing name under a different code, raises
        RegistryConflict.
        """
        current = dict(self._by_name)
        for name in deprecate:
            current[name] = replace(self.entry(name), deprecated=True)
        for entry in entries:
            existing = current.get(entry.name)
            if existing is not None:
                raise RegistryConflict(
                    f"Entity kind {entry.name!r} already holds code 0x{existing.code:02x}"
                )
            current[entry.name] = entry
        return EntityTypeRegistry(current.values(), version=self._version + 1)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[EntityType]:
        return iter(sorted(self._by_code.values(), key=lambda e: e.code))

    def __len__(self) -> int:
        return len(self._by_code)

    def __repr__(self) -> str:
        return f"EntityTypeRegistry(version={self._version}, entries={len(self)})"


ENTITY_TYPES = EntityTypeRegistry(
    [
        # Identity / tenancy
        EntityType("Org", 0x01),
        EntityType("User", 0x02, EntityScope.GLOBAL),
        EntityType("OrgMembership", 0x03),
        EntityType("AuthToken", 0x04, EntityScope.GLOBAL),
        EntityType("OrgInvitation", 0x05),
        # Content / data
        EntityType("Collection", 0x10),
        EntityType("DataSource", 0x11),
        EntityType("Chunk", 0x12),
        EntityType("ExtractedImage", 0x13),
        # Access
        EntityType("ApiKey", 0x20),
        EntityType("UsageLog", 0x21),
        # Collaboration (Canvas* ids live inside canvas documents, not tables)
        EntityType("ChatThread", 0x30),
        EntityType("CanvasCard", 0x31),
        EntityType("CanvasEdge", 0x32),
        EntityType("CanvasComponent", 0x33),
        EntityType("SharedChat", 0x34),
        # Analytics
        EntityType("AiUsageLog", 0x40),
        # Integrations
        EntityType("Connection", 0x50),
        EntityType("SyncLog", 0x51),
    ],
    version=1,
)
