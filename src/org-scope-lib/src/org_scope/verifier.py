"""
org_scope.verifier — Build-time check that queries on tenant-scoped tables
filter by the owning org.

Catches:
    db.select_from("data.chunks").where("id", "=", x).execute()
    db.delete_from("data.data_sources").where("connection_id", "=", x).execute()

Allows:
    db.select_from("data.chunks").where("org_id", "=", org_id).execute()
    db.select_from("data.chunks").where("data.chunks.org_id", "=", org_id).execute()

    # org-safe: nightly cleanup runs across every org
    db.delete_from("data.chunks").where("created_at", "<", cutoff).execute()

How a chain is analyzed:
  1. An entry call is a call to one of the configured entry methods whose
     first argument is a string literal naming a tenant-scoped table.  A
     non-literal table name is skipped, never reported.
  2. From the entry call, follow the chain forward while the result of the
     current call is immediately the receiver of another call.
  3. Any configured filter call whose first literal argument is the table's
     ownership column (bare or qualified, e.g. "t.org_id") satisfies the
     chain.
  4. Otherwise report one diagnostic, unless an exemption comment sits on
     the lines directly above the statement or the entry call.

The analysis is read-only.  Each file is independent, so verify_paths can
fan files out to a process pool.
"""

from __future__ import annotations

import ast
import io
import tokenize
import tomllib
from collections.abc import Iterable, Iterator, Mapping
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from org_scope.models import TABLES, TenantScopedTable, ownership_columns

DEFAULT_ENTRY_METHODS = frozenset({"select_from", "update_table", "delete_from"})
DEFAULT_FILTER_METHOD = "where"
DEFAULT_EXEMPTION_MARKER = "org-safe:"

MISSING_FILTER = "missing-org-filter"
SYNTAX_ERROR = "syntax-error"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VerifierConfig:
    ownership_columns: Mapping[str, str]
    entry_methods: frozenset[str] = DEFAULT_ENTRY_METHODS
    filter_method: str = DEFAULT_FILTER_METHOD
    exemption_marker: str = DEFAULT_EXEMPTION_MARKER
    exclude: tuple[str, ...] = ()

    @classmethod
    def from_tables(
        cls,
        tables: Iterable[TenantScopedTable] = TABLES,
        **overrides: Any,
    ) -> VerifierConfig:
        return cls(ownership_columns=ownership_columns(tuple(tables)), **overrides)


def load_config(pyproject: Path | None = None) -> VerifierConfig:
    """Build the config from the table map, overridden by [tool.org-scope].

    Recognised keys:
        entry-methods     list of method names that start a query
        filter-method     method name of the filter call
        exemption-marker  comment prefix that suppresses a diagnostic
        exclude           glob patterns of files to skip
        tables            {table = ownership column} added to / replacing the map
    """
    config = VerifierConfig.from_tables()
    if pyproject is None or not pyproject.exists():
        return config
    with pyproject.open("rb") as fh:
        data = tomllib.load(fh)
    section = data.get("tool", {}).get("org-scope", {})
    if not isinstance(section, dict):
        raise ValueError(f"[tool.org-scope] must be a table in {pyproject}")

    changes: dict[str, Any] = {}
    if "entry-methods" in section:
        changes["entry_methods"] = frozenset(str(m) for m in section["entry-methods"])
    if "filter-method" in section:
        changes["filter_method"] = str(section["filter-method"])
    if "exemption-marker" in section:
        changes["exemption_marker"] = str(section["exemption-marker"])
    if "exclude" in section:
        changes["exclude"] = tuple(str(p) for p in section["exclude"])
    if "tables" in section:
        tables = section["tables"]
        if not isinstance(tables, dict):
            raise ValueError(f"[tool.org-scope.tables] must be a table in {pyproject}")
        merged = dict(config.ownership_columns)
        merged.update({str(k): str(v) for k, v in tables.items()})
        changes["ownership_columns"] = merged
    return replace(config, **changes)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Diagnostic:
    file: str
    line: int
    table: str | None = field(compare=False)
    message: str = field(compare=False)
    code: str = field(default=MISSING_FILTER, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "table": self.table,
            "code": self.code,
            "message": self.message,
        }


@dataclass(frozen=True)
class VerificationReport:
    diagnostics: tuple[Diagnostic, ...]
    files_checked: int

    @property
    def has_violations(self) -> bool:
        return bool(self.diagnostics)


def _missing_filter_message(table: str, column: str, config: VerifierConfig) -> str:
    return (
        f'Query on "{table}" is missing a .{config.filter_method}(\'{column}\', ...) filter. '
        "Tenant-scoped tables must be scoped to an organization."
    )


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def _callee_name(call: ast.Call) -> str | None:
    if isinstance(call.func, ast.Attribute):
        return call.func.attr
    if isinstance(call.func, ast.Name):
        return call.func.id
    return None


def _first_literal(call: ast.Call) -> str | None:
    if not call.args:
        return None
    first = call.args[0]
    if isinstance(first, ast.Constant) and isinstance(first.value, str):
        return first.value
    return None


def _is_ownership_filter(call: ast.Call, column: str, config: VerifierConfig) -> bool:
    if not (isinstance(call.func, ast.Attribute) and call.func.attr == config.filter_method):
        return False
    value = _first_literal(call)
    if value is None:
        return False
    return value == column or value.endswith(f".{column}")


def _parents(tree: ast.AST) -> dict[ast.AST, ast.AST]:
    return {child: node for node in ast.walk(tree) for child in ast.iter_child_nodes(node)}


def _chain_has_filter(
    entry: ast.Call,
    parents: Mapping[ast.AST, ast.AST],
    column: str,
    config: VerifierConfig,
) -> bool:
    current: ast.AST = entry
    while True:
        attribute = parents.get(current)
        if not (isinstance(attribute, ast.Attribute) and attribute.value is current):
            return False
        call = parents.get(attribute)
        if not (isinstance(call, ast.Call) and call.func is attribute):
            return False
        if _is_ownership_filter(call, column, config):
            return True
        current = call


def _comment_lines(source: str | bytes) -> dict[int, str]:
    """line number -> comment text, for lines holding nothing but a comment.

    Bytes are decoded by tokenize itself (coding declaration or BOM).
    """
    if isinstance(source, bytes):
        tokens = tokenize.tokenize(io.BytesIO(source).readline)
    else:
        tokens = tokenize.generate_tokens(io.StringIO(source).readline)
    comments: dict[int, str] = {}
    for tok in tokens:
        if tok.type != tokenize.COMMENT:
            continue
        row, col = tok.start
        if not tok.line[:col].strip():
            comments[row] = tok.string.lstrip("#").strip()
    return comments


def _marked_above(line: int, comments: Mapping[int, str], marker: str) -> bool:
    """True if the contiguous comment block directly above line carries the marker."""
    row = line - 1
    while row in comments:
        if comments[row].startswith(marker):
            return True
        row -= 1
    return False


def _enclosing_statement(node: ast.AST, parents: Mapping[ast.AST, ast.AST]) -> ast.AST:
    current = node
    while not isinstance(current, ast.stmt) and current in parents:
        current = parents[current]
    return current


def _entry_calls(
    tree: ast.AST,
    config: VerifierConfig,
) -> Iterator[tuple[ast.Call, str]]:
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        if _callee_name(node) not in config.entry_methods:
            continue
        table = _first_literal(node)
        if table is None or table not in config.ownership_columns:
            continue
        yield node, table


def verify_source(
    source: str | bytes,
    filename: str,
    config: VerifierConfig,
) -> list[Diagnostic]:
    """Return the diagnostics for one module.

    source may be raw file bytes; their declared encoding is honoured.
    """
    try:
        tree = ast.parse(source, filename=filename)
        comments = _comment_lines(source)
    except (SyntaxError, ValueError, tokenize.TokenError) as exc:
        line = getattr(exc, "lineno", None) or 0
        return [
            Diagnostic(
                file=filename,
                line=line,
                table=None,
                message=f"Could not parse file: {exc}",
                code=SYNTAX_ERROR,
            )
        ]
    parents = _parents(tree)
    diagnostics = []
    for call, table in _entry_calls(tree, config):
        statement = _enclosing_statement(call, parents)
        marker = config.exemption_marker
        if _marked_above(call.lineno, comments, marker):
            continue
        if isinstance(statement, ast.stmt) and _marked_above(statement.lineno, comments, marker):
            continue
        column = config.ownership_columns[table]
        if _chain_has_filter(call, parents, column, config):
            continue
        diagnostics.append(
            Diagnostic(
                file=filename,
                line=call.lineno,
                table=table,
                message=_missing_filter_message(table, column, config),
            )
        )
    return sorted(diagnostics)


def verify_file(path: Path | str, config: VerifierConfig) -> list[Diagnostic]:
    path = Path(path)
    return verify_source(path.read_bytes(), str(path), config)


def _is_excluded(path: Path, patterns: tuple[str, ...]) -> bool:
    return any(path.match(pattern) for pattern in patterns)


def iter_source_files(paths: Iterable[Path | str], config: VerifierConfig) -> list[Path]:
    """Expand directories to their *.py files, drop excluded ones, keep order stable."""
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        candidates = sorted(path.rglob("*.py")) if path.is_dir() else [path]
        files.extend(p for p in candidates if not _is_excluded(p, config.exclude))
    return list(dict.fromkeys(files))


def verify_paths(
    paths: Iterable[Path | str],
    config: VerifierConfig,
    *,
    jobs: int = 1,
) -> VerificationReport:
    """Analyze every source file under paths.  All diagnostics are collected."""
    files = iter_source_files(paths, config)
    if jobs > 1 and len(files) > 1:
        with ProcessPoolExecutor(max_workers=jobs) as pool:
            results = list(pool.map(verify_file, files, [config] * len(files)))
    else:
        results = [verify_file(path, config) for path in files]
    diagnostics = sorted(d for result in results for d in result)
    return VerificationReport(diagnostics=tuple(diagnostics), files_checked=len(files))
