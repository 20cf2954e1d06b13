"""
org_scope.invariants — Write-time ownership rules.

Rules are plain data built from the registry and the table map.  A storage
engine either renders them as native constraints (render_check_constraints
emits PostgreSQL DDL) or evaluates them in the same transaction as the write
(InvariantSet.check / check_all, used by InvariantEnforcedDynamoDB).

For every declared table:
  - self-consistency:  org(id) == org(ownership column), type(id) == kind code
                       (global tables: org(id) == GLOBAL_ORG)
  - referential:       every non-null foreign key into a tenant-scoped table
                       decodes to the row's org
  - append-only:       UPDATE and DELETE are rejected outright

A rule failure raises InvariantViolation before anything is written.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from org_scope.exceptions import InvariantViolation, MalformedIdentifier
from org_scope.ids import GLOBAL_ORG, extract_entity_type, extract_org_numeric_id, to_uuid_str
from org_scope.models import TABLES, TenantScopedTable, WriteOperation
from org_scope.registry import ENTITY_TYPES, EntityTypeRegistry

ROOT_OWNERSHIP_COLUMN = "numeric_id"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ForeignKeyOwnershipRule:
    column: str
    target_table: str


@dataclass(frozen=True)
class InvariantDeclaration:
    """Rules for one table, in the shape handed to storage engines."""

    table: str
    ownership_column: str | None
    entity_type_code: int
    foreign_key_rules: tuple[ForeignKeyOwnershipRule, ...]
    append_only: bool


@dataclass(frozen=True)
class Write:
    """One pending row change.  row is the full row for INSERT/UPDATE, the key for DELETE."""

    table: str
    operation: WriteOperation
    row: Mapping[str, Any]


def build_invariant_declarations(
    tables: Iterable[TenantScopedTable] = TABLES,
    registry: EntityTypeRegistry = ENTITY_TYPES,
) -> tuple[InvariantDeclaration, ...]:
    """Resolve the table map into declarations.

    Raises UnknownEntityKind for an unregistered kind and ValueError for a
    foreign key whose target is not a declared tenant-scoped table.
    """
    tables = tuple(tables)
    tenant_tables = {t.table for t in tables if not t.is_global}
    declarations = []
    for t in tables:
        for fk in t.foreign_keys:
            if fk.target_table not in tenant_tables:
                raise ValueError(
                    f"{t.table}.{fk.column} targets {fk.target_table}, "
                    "which is not a declared tenant-scoped table"
                )
        declarations.append(
            InvariantDeclaration(
                table=t.table,
                ownership_column=t.ownership_column,
                entity_type_code=registry.code_of(t.entity_kind),
                foreign_key_rules=tuple(
                    ForeignKeyOwnershipRule(fk.column, fk.target_table) for fk in t.foreign_keys
                ),
                append_only=t.append_only,
            )
        )
    return tuple(declarations)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _org_of(value: Any) -> int:
    """Resolve an ownership value: an org numeric id or the Org's packed id."""
    if isinstance(value, bool):
        raise MalformedIdentifier(value=value, reason="boolean is not an org reference")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal) and value == value.to_integral_value():
        # DynamoDB hands numbers back as Decimal.
        return int(value)
    return extract_org_numeric_id(value)


def _identifier_text(value: Any) -> str | None:
    try:
        return to_uuid_str(value)
    except MalformedIdentifier:
        return None


class InvariantSet:
    """Evaluates declarations against pending writes.  Stateless; safe to share."""

    def __init__(self, declarations: Iterable[InvariantDeclaration]) -> None:
        self._by_table = {d.table: d for d in declarations}

    @classmethod
    def default(cls) -> InvariantSet:
        return cls(build_invariant_declarations())

    def declaration(self, table: str) -> InvariantDeclaration | None:
        return self._by_table.get(table)

    def __contains__(self, table: object) -> bool:
        return table in self._by_table

    def check(
        self,
        table: str,
        operation: WriteOperation,
        row: Mapping[str, Any] | None = None,
    ) -> None:
        """Raise InvariantViolation if the write breaks a rule.  Undeclared tables pass."""
        decl = self._by_table.get(table)
        if decl is None:
            return
        row = row or {}
        identifier = _identifier_text(row.get("id")) if row.get("id") is not None else None

        if decl.append_only and operation in (WriteOperation.UPDATE, WriteOperation.DELETE):
            raise InvariantViolation(
                table=table,
                identifier=identifier,
                rule="append-only",
                detail=f"{operation.value} is not allowed on an append-only table",
            )
        if operation is WriteOperation.DELETE:
            return

        def violation(rule: str, detail: str) -> InvariantViolation:
            return InvariantViolation(table=table, identifier=identifier, rule=rule, detail=detail)

        if "id" not in row or row["id"] is None:
            raise violation("shape", "row has no id")
        try:
            row_org = extract_org_numeric_id(row["id"])
            row_type = extract_entity_type(row["id"])
        except MalformedIdentifier as exc:
            raise violation("shape", exc.reason) from exc

        if row_type != decl.entity_type_code:
            raise violation(
                "entity-type",
                f"id carries type 0x{row_type:02x}, table expects 0x{decl.entity_type_code:02x}",
            )

        if decl.ownership_column is None:
            if row_org != GLOBAL_ORG:
                raise violation("global-org", f"global row id embeds org {row_org}")
            return

        if row.get(decl.ownership_column) is None:
            raise violation("shape", f"row has no {decl.ownership_column}")
        try:
            owner_org = _org_of(row[decl.ownership_column])
        except MalformedIdentifier as exc:
            raise violation("shape", f"{decl.ownership_column}: {exc.reason}") from exc
        if row_org != owner_org:
            raise violation(
                "ownership",
                f"id embeds org {row_org} but {decl.ownership_column} is org {owner_org}",
            )

        for rule in decl.foreign_key_rules:
            ref = row.get(rule.column)
            if ref is None:
                continue
            try:
                ref_org = extract_org_numeric_id(ref)
            except MalformedIdentifier as exc:
                raise violation("shape", f"{rule.column}: {exc.reason}") from exc
            if ref_org != owner_org:
                raise violation(
                    "foreign-key",
                    f"{rule.column} points into {rule.target_table} row of org {ref_org}, "
                    f"row belongs to org {owner_org}",
                )

    def check_all(self, writes: Iterable[Write]) -> None:
        """Validate a batch; the first violation aborts the whole batch."""
        for write in writes:
            self.check(write.table, write.operation, write.row)


# ---------------------------------------------------------------------------
# Native constraints (PostgreSQL)
# ---------------------------------------------------------------------------


def _constraint_prefix(table: str) -> str:
    return "chk_" + table.rsplit(".", 1)[-1]


def _sql_org(column: str) -> str:
    if column == ROOT_OWNERSHIP_COLUMN:
        return column
    return f"extract_org_numeric_id({column})"


def render_check_constraints(decl: InvariantDeclaration) -> list[str]:
    """Render a declaration as PostgreSQL DDL.

    Relies on the extract_org_numeric_id(uuid) / extract_entity_type(uuid)
    SQL functions installed by the infrastructure migration.
    """
    prefix = _constraint_prefix(decl.table)
    statements = [
        f"ALTER TABLE {decl.table} ADD CONSTRAINT {prefix}_entity_type "
        f"CHECK (extract_entity_type(id) = {decl.entity_type_code})"
    ]
    if decl.ownership_column is None:
        statements.append(
            f"ALTER TABLE {decl.table} ADD CONSTRAINT {prefix}_org "
            f"CHECK (extract_org_numeric_id(id) = {GLOBAL_ORG})"
        )
    else:
        owner = _sql_org(decl.ownership_column)
        statements.append(
            f"ALTER TABLE {decl.table} ADD CONSTRAINT {prefix}_org "
            f"CHECK (extract_org_numeric_id(id) = {owner})"
        )
        for rule in decl.foreign_key_rules:
            statements.append(
                f"ALTER TABLE {decl.table} ADD CONSTRAINT {prefix}_{rule.column}_org "
                f"CHECK ({rule.column} IS NULL OR "
                f"extract_org_numeric_id({rule.column}) = {owner})"
            )
    if decl.append_only:
        name = decl.table.rsplit(".", 1)[-1]
        statements.append(
            f"CREATE OR REPLACE FUNCTION {name}_append_only() RETURNS trigger "
            "LANGUAGE plpgsql AS $$ BEGIN "
            f"RAISE EXCEPTION '{name} is append-only: % not allowed', TG_OP; "
            "END; $$"
        )
        statements.append(
            f"CREATE TRIGGER trg_{name}_append_only BEFORE UPDATE OR DELETE ON {decl.table} "
            f"FOR EACH ROW EXECUTE FUNCTION {name}_append_only()"
        )
    return statements
