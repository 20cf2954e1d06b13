"""
org_scope.ids — Packed identifier codec.

Every entity id is 16 bytes with its owner and kind embedded:

    bytes 0-3    org numeric id   (uint32, big-endian)
    bytes 4-9    timestamp        (uint48, big-endian, ms since Unix epoch)
    byte  10     entity type code (from the registry)
    bytes 11-15  random           (CSPRNG)

Ids are stored and exchanged as canonical UUID strings; every decoder here
accepts bytes, uuid.UUID or that string form.  Decoders only read fixed
offsets and never look at the random tail.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime, timedelta
from typing import NamedTuple

from org_scope.exceptions import MalformedIdentifier
from org_scope.registry import ENTITY_TYPES, EntityTypeRegistry

ID_LENGTH = 16
RANDOM_LENGTH = 5

GLOBAL_ORG = 0
MIN_ORG_NUMERIC_ID = 1
MAX_ORG_NUMERIC_ID = 2**31 - 2

_MAX_U32 = 2**32 - 1
_MAX_U48 = 2**48 - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)

_ORG = slice(0, 4)
_TIMESTAMP = slice(4, 10)
_ENTITY_TYPE = 10

IdentifierLike = bytes | bytearray | uuid.UUID | str


class PackedId(NamedTuple):
    org_numeric_id: int
    timestamp_ms: int
    entity_type: int
    random: bytes


def _timestamp_ms(timestamp: datetime | int | None) -> int:
    if timestamp is None:
        timestamp = datetime.now(UTC)
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        # Integer division truncates to whole milliseconds without float error.
        ms = (timestamp - _EPOCH) // _ONE_MS
    elif isinstance(timestamp, int) and not isinstance(timestamp, bool):
        ms = timestamp
    else:
        raise TypeError(f"timestamp must be datetime, int or None, got {type(timestamp).__name__}")
    if not 0 <= ms <= _MAX_U48:
        raise ValueError(f"timestamp {ms}ms does not fit in 48 bits")
    return ms


def encode(
    org_numeric_id: int,
    entity_type: int,
    timestamp: datetime | int | None = None,
    *,
    registry: EntityTypeRegistry = ENTITY_TYPES,
) -> bytes:
    """Pack a new 16-byte identifier.

    entity_type must be a code issued by the registry (deprecated kinds
    included).  timestamp defaults to now and is truncated to whole ms.
    """
    if not 0 <= org_numeric_id <= _MAX_U32:
        raise ValueError(f"org numeric id {org_numeric_id} does not fit in 32 bits")
    if not registry.is_issued(entity_type):
        raise ValueError(f"entity type 0x{entity_type:02x} was never issued by the registry")
    ms = _timestamp_ms(timestamp)
    return (
        org_numeric_id.to_bytes(4, "big")
        + ms.to_bytes(6, "big")
        + bytes([entity_type])
        + secrets.token_bytes(RANDOM_LENGTH)
    )


def mint(
    kind: str,
    org: int | IdentifierLike = GLOBAL_ORG,
    *,
    timestamp: datetime | int | None = None,
    registry: EntityTypeRegistry = ENTITY_TYPES,
) -> bytes:
    """Pack a new identifier for an entity kind by name.

    Global kinds (User, AuthToken) always embed GLOBAL_ORG; tenant kinds
    must be given the owning org, either its numeric id or the Org's own
    packed identifier.
    """
    entry = registry.entry(kind)
    org_numeric_id = _resolve_org(org, registry)
    if registry.is_global(kind):
        if org_numeric_id != GLOBAL_ORG:
            raise ValueError(f"{kind} is a global entity and cannot belong to org {org_numeric_id}")
    elif not MIN_ORG_NUMERIC_ID <= org_numeric_id <= MAX_ORG_NUMERIC_ID:
        raise ValueError(f"{kind} ids need an org numeric id in [1, 2^31-2], got {org_numeric_id}")
    return encode(org_numeric_id, entry.code, timestamp, registry=registry)


def _resolve_org(org: int | IdentifierLike, registry: EntityTypeRegistry) -> int:
    if isinstance(org, bool):
        raise TypeError("org must be an org numeric id or an Org identifier, got bool")
    if isinstance(org, int):
        return org
    raw = parse_identifier(org)
    if raw[_ENTITY_TYPE] != registry.code_of("Org"):
        raise ValueError(f"{to_uuid_str(raw)} is not an Org identifier")
    return int.from_bytes(raw[_ORG], "big")


def parse_identifier(value: IdentifierLike) -> bytes:
    """Return the raw 16 bytes of an identifier in any accepted form."""
    if isinstance(value, uuid.UUID):
        return value.bytes
    if isinstance(value, str):
        try:
            return uuid.UUID(value).bytes
        except ValueError as exc:
            raise MalformedIdentifier(value=value, reason="not a UUID string") from exc
    if isinstance(value, (bytes, bytearray)):
        if len(value) != ID_LENGTH:
            raise MalformedIdentifier(
                value=value, reason=f"expected {ID_LENGTH} bytes, got {len(value)}"
            )
        return bytes(value)
    raise MalformedIdentifier(value=value, reason=f"unsupported type {type(value).__name__}")


def to_uuid_str(value: IdentifierLike) -> str:
    return str(uuid.UUID(bytes=parse_identifier(value)))


def extract_org_numeric_id(value: IdentifierLike) -> int:
    return int.from_bytes(parse_identifier(value)[_ORG], "big")


def extract_entity_type(value: IdentifierLike) -> int:
    return parse_identifier(value)[_ENTITY_TYPE]


def extract_timestamp_ms(value: IdentifierLike) -> int:
    return int.from_bytes(parse_identifier(value)[_TIMESTAMP], "big")


def extract_timestamp(value: IdentifierLike) -> datetime:
    return _EPOCH + extract_timestamp_ms(value) * _ONE_MS


def extract_entity_kind(
    value: IdentifierLike,
    registry: EntityTypeRegistry = ENTITY_TYPES,
) -> str:
    """Kind name for an id, or UNKNOWN for codes the registry never issued."""
    return registry.name_of(extract_entity_type(value))


def decode(value: IdentifierLike) -> PackedId:
    raw = parse_identifier(value)
    return PackedId(
        org_numeric_id=int.from_bytes(raw[_ORG], "big"),
        timestamp_ms=int.from_bytes(raw[_TIMESTAMP], "big"),
        entity_type=raw[_ENTITY_TYPE],
        random=raw[_ENTITY_TYPE + 1 :],
    )


def ids_share_org(a: IdentifierLike, b: IdentifierLike) -> bool:
    return parse_identifier(a)[_ORG] == parse_identifier(b)[_ORG]


def id_belongs_to_org(value: IdentifierLike, org_numeric_id: int) -> bool:
    return extract_org_numeric_id(value) == org_numeric_id


def is_entity_type(
    value: IdentifierLike,
    kind: str,
    registry: EntityTypeRegistry = ENTITY_TYPES,
) -> bool:
    return extract_entity_type(value) == registry.code_of(kind)
