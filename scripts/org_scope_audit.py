#!/usr/bin/env python3
"""
org_scope_audit.py

Build gate: every query on a tenant-scoped table must filter by org.

Scans Python sources for query chains that start on a tenant-scoped table
(select_from / update_table / delete_from by default) and reports any chain
without a .where('org_id', ...) filter.  Deliberate cross-org queries are
exempted with a comment directly above the statement:

    # org-safe: <reason>

Configuration comes from the table map in org_scope.models, overridden by
[tool.org-scope] in pyproject.toml.

Exit codes:
    0  No diagnostics
    1  One or more diagnostics
    2  A given path does not exist

Usage:
    uv run python scripts/org_scope_audit.py check src/ --json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from org_scope.verifier import VerificationReport, load_config, verify_paths

logger = logging.getLogger("org_scope_audit")

ROOT = Path(__file__).resolve().parents[1]
PYPROJECT = ROOT / "pyproject.toml"
DEFAULT_PATHS = [ROOT / "src"]


def print_report(report: VerificationReport, *, json_output: bool = False) -> None:
    if json_output:
        payload = {
            "ok": not report.has_violations,
            "files_checked": report.files_checked,
            "diagnostics": [d.to_dict() for d in report.diagnostics],
        }
        print(json.dumps(payload, indent=2))
        return

    print("Org scope audit:", "FAILED" if report.has_violations else "PASS")
    print(f"  files checked: {report.files_checked}")
    for diagnostic in report.diagnostics:
        print(f"  ERROR: {diagnostic.file}:{diagnostic.line}: {diagnostic.message}")


def cmd_check(
    paths: list[Path],
    *,
    config_path: Path,
    jobs: int = 1,
    json_output: bool = False,
) -> int:
    config = load_config(config_path)
    missing = [p for p in paths if not p.exists()]
    if missing:
        for path in missing:
            logger.error("Path not found: %s", path)
        return 2
    report = verify_paths(paths, config, jobs=jobs)
    logger.info(
        "Checked %d file(s), %d diagnostic(s)", report.files_checked, len(report.diagnostics)
    )
    print_report(report, json_output=json_output)
    return 1 if report.has_violations else 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Verify org filters on tenant-scoped queries")
    check.add_argument("paths", nargs="*", type=Path, help="Files or directories (default: src/)")
    check.add_argument("--config", type=Path, default=PYPROJECT, help="pyproject.toml to read")
    check.add_argument("--jobs", type=int, default=1, help="Files analyzed in parallel")
    check.add_argument("--json", action="store_true", help="Emit JSON output")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    args = parse_args(argv)
    if args.command == "check":
        return cmd_check(
            args.paths or DEFAULT_PATHS,
            config_path=args.config,
            jobs=args.jobs,
            json_output=args.json,
        )
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
