"""
org_scope.models — Table ownership map and tenant records.

Declares, for every table that stores packed identifiers, which entity kind
its primary key carries, which column names the owning org, and which
foreign keys point into other tenant-scoped tables.  This one map feeds the
invariant declarations (write-time checks) and the query verifier
(build-time checks).

Tables defined here:
    org.orgs                 tenant root; id embeds its own numeric_id
    auth.users, auth.auth_tokens
                             global; ids embed GLOBAL_ORG
    org.*, data.*, api.*, analytics.*, integration.*
                             tenant-scoped; ids embed org_id's org
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

OWNERSHIP_COLUMN = "org_id"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class WriteOperation(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# ---------------------------------------------------------------------------
# Table declarations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ForeignKey:
    """A column holding the id of a row in another declared table."""

    column: str
    target_table: str


@dataclass(frozen=True)
class TenantScopedTable:
    """Ownership declaration for one table.

    ownership_column=None marks a global table: every id must embed
    GLOBAL_ORG.  query_scoped=False keeps a table out of the query
    verifier (the orgs table is looked up by its own id).
    """

    table: str
    entity_kind: str
    ownership_column: str | None = OWNERSHIP_COLUMN
    foreign_keys: tuple[ForeignKey, ...] = ()
    append_only: bool = False
    query_scoped: bool = True

    @property
    def is_global(self) -> bool:
        return self.ownership_column is None


TABLES: tuple[TenantScopedTable, ...] = (
    # Tenant root
    TenantScopedTable("org.orgs", "Org", ownership_column="numeric_id", query_scoped=False),
    # Global
    TenantScopedTable("auth.users", "User", ownership_column=None, query_scoped=False),
    TenantScopedTable("auth.auth_tokens", "AuthToken", ownership_column=None, query_scoped=False),
    # Identity / tenancy
    TenantScopedTable("org.org_memberships", "OrgMembership"),
    TenantScopedTable("org.org_invitations", "OrgInvitation"),
    # Content / data
    TenantScopedTable("data.collections", "Collection"),
    TenantScopedTable(
        "data.data_sources",
        "DataSource",
        foreign_keys=(
            ForeignKey("collection_id", "data.collections"),
            ForeignKey("connection_id", "integration.connections"),
        ),
    ),
    TenantScopedTable(
        "data.chunks",
        "Chunk",
        foreign_keys=(
            ForeignKey("data_source_id", "data.data_sources"),
            ForeignKey("collection_id", "data.collections"),
        ),
    ),
    TenantScopedTable(
        "data.extracted_images",
        "ExtractedImage",
        foreign_keys=(ForeignKey("data_source_id", "data.data_sources"),),
    ),
    # Collaboration
    TenantScopedTable(
        "data.chat_threads",
        "ChatThread",
        foreign_keys=(
            ForeignKey("collection_id", "data.collections"),
            ForeignKey("membership_id", "org.org_memberships"),
        ),
    ),
    TenantScopedTable(
        "data.shared_chats",
        "SharedChat",
        foreign_keys=(
            ForeignKey("thread_id", "data.chat_threads"),
            ForeignKey("membership_id", "org.org_memberships"),
        ),
    ),
    # Access
    TenantScopedTable("api.api_keys", "ApiKey"),
    TenantScopedTable(
        "api.usage_logs",
        "UsageLog",
        foreign_keys=(ForeignKey("api_key_id", "api.api_keys"),),
        append_only=True,
    ),
    # Analytics
    TenantScopedTable("analytics.ai_usage_logs", "AiUsageLog", append_only=True),
    # Integrations
    TenantScopedTable("integration.connections", "Connection"),
)


def ownership_columns(tables: tuple[TenantScopedTable, ...] = TABLES) -> dict[str, str]:
    """table -> ownership column, for every table the query verifier should check."""
    return {
        t.table: t.ownership_column
        for t in tables
        if t.query_scoped and t.ownership_column is not None
    }


# ---------------------------------------------------------------------------
# Tenant root record
# Table: org numbers, PK: numeric_id (N)
# The conditional put on numeric_id is the uniqueness constraint the
# allocator relies on.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrgRecord:
    """A provisioned tenant.

    id is the Org's packed identifier (UUID string) and embeds numeric_id.
    """

    id: str
    numeric_id: int
    name: str
    created_at: str  # ISO 8601 UTC

    def to_item(self) -> dict[str, object]:
        return {
            "numeric_id": self.numeric_id,
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
        }
