"""
org_scope — Tenant-isolation substrate.

Packed identifiers that embed the owning org, the registry of entity type
codes, org numeric id allocation, write-time ownership invariants, and the
build-time verifier that every query on a tenant-scoped table filters by org.
"""

from org_scope.allocator import OrgNumericIdAllocator
from org_scope.exceptions import (
    AllocationExhausted,
    InvariantViolation,
    MalformedIdentifier,
    OrgNumericIdConflict,
    RegistryConflict,
    UnknownEntityKind,
)
from org_scope.ids import (
    GLOBAL_ORG,
    encode,
    extract_entity_type,
    extract_org_numeric_id,
    mint,
    to_uuid_str,
)
from org_scope.invariants import InvariantSet, build_invariant_declarations
from org_scope.registry import ENTITY_TYPES, UNKNOWN, EntityTypeRegistry
from org_scope.verifier import Diagnostic, VerifierConfig, verify_paths

__all__ = [
    "ENTITY_TYPES",
    "GLOBAL_ORG",
    "UNKNOWN",
    "AllocationExhausted",
    "Diagnostic",
    "EntityTypeRegistry",
    "InvariantSet",
    "InvariantViolation",
    "MalformedIdentifier",
    "OrgNumericIdAllocator",
    "OrgNumericIdConflict",
    "RegistryConflict",
    "UnknownEntityKind",
    "VerifierConfig",
    "build_invariant_declarations",
    "encode",
    "extract_entity_type",
    "extract_org_numeric_id",
    "mint",
    "to_uuid_str",
    "verify_paths",
]
