"""
tests/test_verifier.py — Static org-filter check on query chains.

Validates:
- A chain on a tenant-scoped table without an org filter is reported once
- Bare and qualified ownership columns both satisfy the chain
- The exemption comment directly above suppresses the report
- Dynamic table names and unscoped tables are never reported
- Unparseable files become diagnostics instead of aborting the run
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
from org_scope.verifier import (
    MISSING_FILTER,
    SYNTAX_ERROR,
    Diagnostic,
    VerifierConfig,
    iter_source_files,
    load_config,
    verify_paths,
    verify_source,
)

FILE = "app/queries.py"


@pytest.fixture
def config() -> VerifierConfig:
    return VerifierConfig(
        ownership_columns={"data.chunks": "org_id", "data.collections": "org_id"},
        entry_methods=frozenset({"entry"}),
        filter_method="filter",
    )


def _check(source: str, config: VerifierConfig) -> list[Diagnostic]:
    return verify_source(textwrap.dedent(source), FILE, config)


# ===========================================================================
# Chains
# ===========================================================================


class TestChains:
    def test_missing_filter_reported(self, config: VerifierConfig) -> None:
        diagnostics = _check(
            """
            x = 1
            entry('data.chunks').filter('id', '=', x)
            """,
            config,
        )
        assert len(diagnostics) == 1
        d = diagnostics[0]
        assert (d.file, d.line, d.table) == (FILE, 3, "data.chunks")
        assert d.code == MISSING_FILTER
        assert "data.chunks" in d.message
        assert ".filter('org_id', ...)" in d.message

    def test_org_filter_satisfies(self, config: VerifierConfig) -> None:
        assert _check("entry('data.chunks').filter('org_id', '=', o)\n", config) == []

    def test_qualified_org_filter_satisfies(self, config: VerifierConfig) -> None:
        assert _check("entry('data.chunks').filter('data.chunks.org_id', '=', o)\n", config) == []

    def test_method_entry_call(self, config: VerifierConfig) -> None:
        diagnostics = _check("rows = db.entry('data.chunks').filter('id', '=', x).run()\n", config)
        assert [d.line for d in diagnostics] == [1]

    def test_filter_later_in_chain(self, config: VerifierConfig) -> None:
        source = """
        rows = (
            db.entry("data.chunks")
            .join("data.collections", "collection_id", "id")
            .filter("id", "=", x)
            .filter("org_id", "=", org)
            .run()
        )
        """
        assert _check(source, config) == []

    def test_dynamic_table_name_skipped(self, config: VerifierConfig) -> None:
        assert _check("entry(table_name).filter('id', '=', x)\n", config) == []

    def test_unscoped_table_skipped(self, config: VerifierConfig) -> None:
        assert _check("entry('public.settings').run()\n", config) == []

    def test_non_literal_filter_column_does_not_satisfy(self, config: VerifierConfig) -> None:
        assert len(_check("entry('data.chunks').filter(col, '=', o)\n", config)) == 1

    def test_filter_in_separate_statement_does_not_satisfy(self, config: VerifierConfig) -> None:
        source = """
        q = entry('data.chunks')
        q = q.filter('org_id', '=', o)
        """
        assert [d.line for d in _check(source, config)] == [2]

    def test_other_method_named_filter_on_other_receiver(self, config: VerifierConfig) -> None:
        source = """
        ids.filter('org_id')
        entry('data.chunks').run()
        """
        assert len(_check(source, config)) == 1

    def test_every_chain_reported_in_line_order(self, config: VerifierConfig) -> None:
        source = """
        def load(db, x):
            a = db.entry('data.collections').filter('id', '=', x)
            b = db.entry('data.chunks').filter('org_id', '=', x)
            c = db.entry('data.chunks').run()
            return a, b, c
        """
        diagnostics = _check(source, config)
        assert [(d.line, d.table) for d in diagnostics] == [
            (3, "data.collections"),
            (5, "data.chunks"),
        ]


# ===========================================================================
# Exemptions
# ===========================================================================


class TestExemptions:
    def test_marker_directly_above(self, config: VerifierConfig) -> None:
        source = """
        # org-safe: nightly cleanup runs across every org
        entry('data.chunks').filter('id', '=', x)
        """
        assert _check(source, config) == []

    def test_marker_in_comment_block_above(self, config: VerifierConfig) -> None:
        source = """
        # org-safe: platform admin report
        # reviewed with security
        entry('data.chunks').filter('id', '=', x)
        """
        assert _check(source, config) == []

    def test_marker_above_multiline_statement(self, config: VerifierConfig) -> None:
        source = """
        # org-safe: migration backfill
        rows = (
            db.entry('data.chunks')
            .filter('id', '=', x)
        )
        """
        assert _check(source, config) == []

    def test_marker_separated_by_blank_line_ignored(self, config: VerifierConfig) -> None:
        source = """
        # org-safe: too far away

        entry('data.chunks').filter('id', '=', x)
        """
        assert len(_check(source, config)) == 1

    def test_other_comment_does_not_exempt(self, config: VerifierConfig) -> None:
        source = """
        # safe: trust me
        entry('data.chunks').filter('id', '=', x)
        """
        assert len(_check(source, config)) == 1

    def test_trailing_comment_does_not_exempt_next_line(self, config: VerifierConfig) -> None:
        source = """
        x = 1  # org-safe: not a standalone comment
        entry('data.chunks').filter('id', '=', x)
        """
        assert len(_check(source, config)) == 1

    def test_marker_string_literal_is_not_a_comment(self, config: VerifierConfig) -> None:
        source = """
        note = "# org-safe: inside a string"
        entry('data.chunks').filter('id', '=', x)
        """
        assert len(_check(source, config)) == 1

    def test_marker_above_entry_call_inside_statement(self, config: VerifierConfig) -> None:
        source = """
        rows = wrap(
            # org-safe: admin export
            entry('data.chunks').filter('id', '=', x),
        )
        """
        assert _check(source, config) == []

    def test_entry_call_inside_statement_without_marker(self, config: VerifierConfig) -> None:
        source = """
        rows = wrap(
            entry('data.chunks').filter('id', '=', x),
        )
        """
        assert [d.line for d in _check(source, config)] == [3]


# ===========================================================================
# Unparseable input
# ===========================================================================


class TestSyntaxErrors:
    def test_syntax_error_becomes_diagnostic(self, config: VerifierConfig) -> None:
        diagnostics = _check("def broken(:\n    pass\n", config)
        assert len(diagnostics) == 1
        assert diagnostics[0].code == SYNTAX_ERROR
        assert diagnostics[0].table is None
        assert diagnostics[0].line == 1


# ===========================================================================
# Source encodings
# ===========================================================================


class TestEncodings:
    def test_declared_latin1_file_is_analyzed(self, tmp_path: Path, config: VerifierConfig) -> None:
        latin = tmp_path / "latin.py"
        latin.write_bytes(
            "# -*- coding: latin-1 -*-\n"
            "label = 'café'\n"
            "entry('data.chunks').filter('id', '=', x)\n".encode("latin-1")
        )
        _write(tmp_path / "plain.py", "entry('data.collections').run()\n")
        report = verify_paths([tmp_path], config)
        assert report.files_checked == 2
        assert {(Path(d.file).name, d.line, d.code) for d in report.diagnostics} == {
            ("latin.py", 3, MISSING_FILTER),
            ("plain.py", 1, MISSING_FILTER),
        }

    def test_utf8_bom_file_parses(self, tmp_path: Path, config: VerifierConfig) -> None:
        path = tmp_path / "bom.py"
        path.write_bytes(
            b"\xef\xbb\xbf# org-safe: reindex\n"
            b"entry('data.chunks').filter('id', '=', x)\n"
            b"entry('data.chunks').filter('org_id', '=', o)\n"
        )
        report = verify_paths([path], config)
        assert report.diagnostics == ()

    def test_source_bytes_accepted(self, config: VerifierConfig) -> None:
        diagnostics = verify_source(b"entry('data.chunks').run()\n", FILE, config)
        assert [(d.line, d.table) for d in diagnostics] == [(1, "data.chunks")]


# ===========================================================================
# Configuration
# ===========================================================================


class TestLoadConfig:
    def test_defaults_from_table_map(self) -> None:
        config = load_config(None)
        assert config.ownership_columns["data.chunks"] == "org_id"
        assert "org.orgs" not in config.ownership_columns
        assert "auth.users" not in config.ownership_columns
        assert config.entry_methods == frozenset({"select_from", "update_table", "delete_from"})
        assert config.filter_method == "where"
        assert config.exemption_marker == "org-safe:"

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        assert load_config(tmp_path / "pyproject.toml") == load_config(None)

    def test_overrides(self, tmp_path: Path) -> None:
        pyproject = tmp_path / "pyproject.toml"
        pyproject.write_text(
            textwrap.dedent(
                """
                [tool.org-scope]
                entry-methods = ["query"]
                filter-method = "filter_by"
                exemption-marker = "cross-org:"
                exclude = ["*/migrations/*"]

                [tool.org-scope.tables]
                "billing.invoices" = "tenant_org"
                """
            ),
            encoding="utf-8",
        )
        config = load_config(pyproject)
        assert config.entry_methods == frozenset({"query"})
        assert config.filter_method == "filter_by"
        assert config.exemption_marker == "cross-org:"
        assert config.exclude == ("*/migrations/*",)
        assert config.ownership_columns["billing.invoices"] == "tenant_org"
        assert config.ownership_columns["data.chunks"] == "org_id"

    def test_tables_must_be_a_table(self, tmp_path: Path) -> None:
        pyproject = tmp_path / "pyproject.toml"
        pyproject.write_text('[tool.org-scope]\ntables = ["data.chunks"]\n', encoding="utf-8")
        with pytest.raises(ValueError, match="must be a table"):
            load_config(pyproject)


# ===========================================================================
# Files and directories
# ===========================================================================


def _write(path: Path, source: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(source), encoding="utf-8")
    return path


class TestVerifyPaths:
    @pytest.fixture
    def tree(self, tmp_path: Path) -> Path:
        _write(tmp_path / "app" / "good.py", "entry('data.chunks').filter('org_id', '=', o)\n")
        _write(tmp_path / "app" / "bad.py", "x = 1\nentry('data.chunks').run()\n")
        _write(tmp_path / "app" / "pkg" / "worse.py", "entry('data.collections').run()\n")
        _write(tmp_path / "app" / "tests" / "test_fixture.py", "entry('data.chunks').run()\n")
        _write(tmp_path / "app" / "notes.txt", "entry('data.chunks').run()\n")
        return tmp_path

    def test_collects_all_diagnostics(self, tree: Path, config: VerifierConfig) -> None:
        report = verify_paths([tree / "app"], config)
        assert report.has_violations
        assert report.files_checked == 4
        assert {(Path(d.file).name, d.line) for d in report.diagnostics} == {
            ("bad.py", 2),
            ("test_fixture.py", 1),
            ("worse.py", 1),
        }

    def test_exclude_patterns(self, tree: Path, config: VerifierConfig) -> None:
        excluding = VerifierConfig(
            ownership_columns=config.ownership_columns,
            entry_methods=config.entry_methods,
            filter_method=config.filter_method,
            exclude=("*/tests/*",),
        )
        files = iter_source_files([tree / "app"], excluding)
        assert all("tests" not in f.parts for f in files)
        assert len(files) == 3

    def test_single_file_path(self, tree: Path, config: VerifierConfig) -> None:
        report = verify_paths([tree / "app" / "good.py"], config)
        assert not report.has_violations
        assert report.files_checked == 1

    def test_parallel_matches_serial(self, tree: Path, config: VerifierConfig) -> None:
        serial = verify_paths([tree / "app"], config)
        parallel = verify_paths([tree / "app"], config, jobs=2)
        assert parallel == serial

    def test_duplicate_paths_checked_once(self, tree: Path, config: VerifierConfig) -> None:
        report = verify_paths([tree / "app", tree / "app" / "bad.py"], config)
        assert report.files_checked == 4

    def test_diagnostic_to_dict(self, tree: Path, config: VerifierConfig) -> None:
        report = verify_paths([tree / "app" / "bad.py"], config)
        payload = report.diagnostics[0].to_dict()
        assert payload["line"] == 2
        assert payload["table"] == "data.chunks"
        assert payload["code"] == MISSING_FILTER
