"""
org_scope.tenants — Tenant provisioning.

Allocates the tenant's org numeric id exactly once and mints the root Org
identifier that embeds it.  The org record is written by the reservation
itself, so a tenant either exists with a unique number or not at all.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol

from aws_lambda_powertools import Logger

from org_scope.allocator import OrgNumericIdAllocator
from org_scope.ids import mint, to_uuid_str
from org_scope.models import OrgRecord
from org_scope.registry import ENTITY_TYPES, EntityTypeRegistry

logger = Logger(service="org-scope")


class OrgNumberStore(Protocol):
    def is_used(self, numeric_id: int) -> bool: ...

    def reserve(self, record: OrgRecord) -> None: ...


def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def provision_org(
    name: str,
    *,
    store: OrgNumberStore,
    allocator: OrgNumericIdAllocator | None = None,
    registry: EntityTypeRegistry = ENTITY_TYPES,
    now: datetime | None = None,
) -> OrgRecord:
    """Create a tenant: allocate its numeric id and mint its Org identifier.

    Raises AllocationExhausted if no free number is found within the
    allocator's bound; nothing is written in that case.
    """
    if not name.strip():
        raise ValueError("name is required")
    allocator = allocator or OrgNumericIdAllocator()
    created = now or datetime.now(UTC)
    reserved: list[OrgRecord] = []

    def reserve(numeric_id: int) -> None:
        record = OrgRecord(
            id=to_uuid_str(mint("Org", numeric_id, timestamp=created, registry=registry)),
            numeric_id=numeric_id,
            name=name.strip(),
            created_at=_iso(created),
        )
        store.reserve(record)
        reserved.append(record)

    numeric_id = allocator.allocate(store.is_used, reserve)
    record = reserved[-1]
    logger.info("Org provisioned", org_id=record.id, numeric_id=numeric_id)
    return record
