# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
drop-cell: expand `@defers` functions in a Python file ahead of time.

The output is the module with every decorated function rewritten to plain
`with DropCell(...)` code and the `defers` decorator removed, plus one import
of the runtime helpers. Useful to inspect what a defer block turns into, and
to check a file for malformed defer blocks (`--check`) without importing it.
"""

from __future__ import annotations

import argparse
import ast
import json
import logging
import sys
from pathlib import Path

from drop_cell.core.diagnostics import Diagnostic
from drop_cell.core.logging import configure_logging
from drop_cell.core.span import Span
from drop_cell.errors import DeferSyntaxError
from drop_cell.expand import expand_module
from drop_cell.lowering import HELPER_CAPTURES, HELPER_CELL

logger = logging.getLogger(__name__)

HELPER_IMPORT = f"from drop_cell.cell import Captures as {HELPER_CAPTURES}, DropCell as {HELPER_CELL}"


def _diag_to_json(diag: Diagnostic, phase: str, source: Path) -> dict:
	"""Render a Diagnostic to a structured JSON-friendly dict."""
	return diag.to_json(default_phase=phase, default_file=str(source))


def _report(diags: list[Diagnostic], source: Path, *, as_json: bool) -> None:
	if as_json:
		payload = {
			"exit_code": 1,
			"diagnostics": [_diag_to_json(d, "parser", source) for d in diags],
		}
		print(json.dumps(payload))
		return
	for d in diags:
		line = d.span.line if d.span.line is not None else "?"
		column = d.span.column if d.span.column is not None else "?"
		print(f"{d.span.file or source}:{line}:{column}: {d.severity}: {d.message}", file=sys.stderr)


def expand_source(text: str, *, filename: str) -> tuple[str | None, list[Diagnostic]]:
	"""
	Expand every `@defers` function in `text`.

	Returns the expanded source (None on error) and the diagnostics.
	"""
	try:
		tree = ast.parse(text, filename=filename)
	except SyntaxError as err:
		diag = Diagnostic(
			message=f"invalid Python source: {err.msg}",
			phase="source",
			span=Span(file=filename, line=err.lineno, column=err.offset),
		)
		return None, [diag]
	errors: list[DeferSyntaxError] = expand_module(tree, filename=filename)
	if errors:
		return None, [err.to_diagnostic() for err in errors]
	helper = ast.parse(HELPER_IMPORT).body
	insert_at = 0
	for pos, stmt in enumerate(tree.body):
		# Keep the module docstring and __future__ imports first.
		if pos == 0 and isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant) and isinstance(stmt.value.value, str):
			insert_at = pos + 1
		elif isinstance(stmt, ast.ImportFrom) and stmt.module == "__future__":
			insert_at = pos + 1
		else:
			break
	tree.body[insert_at:insert_at] = helper
	return ast.unparse(ast.fix_missing_locations(tree)) + "\n", []


def main(argv: list[str] | None = None) -> int:
	"""
	Expand a file, writing the result to stdout or `-o`.

	With --json, prints structured diagnostics (phase/message/severity/file/line/column)
	and an exit_code; otherwise prints human-readable messages to stderr.
	"""
	parser = argparse.ArgumentParser(prog="drop-cell", description="Expand @defers functions in a Python file")
	parser.add_argument("source", type=Path, help="Path to the Python source file")
	parser.add_argument("-o", "--output", type=Path, help="Write the expanded module here instead of stdout")
	parser.add_argument(
		"--check",
		action="store_true",
		help="Only check defer blocks for errors; do not print the expansion",
	)
	parser.add_argument(
		"--json",
		action="store_true",
		help="Emit diagnostics as JSON (phase/message/severity/file/line/column)",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Log expansion details to stderr")
	parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines")
	args = parser.parse_args(argv)

	configure_logging(verbose=args.verbose, log_json=args.log_json)

	source_path: Path = args.source
	try:
		text = source_path.read_text(encoding="utf-8")
	except OSError as err:
		msg = f"cannot read source: {err.strerror or err}"
		_report([Diagnostic(message=msg, phase="source", span=Span(file=str(source_path)))], source_path, as_json=args.json)
		return 1

	expanded, diags = expand_source(text, filename=str(source_path))
	if diags:
		logger.debug("expansion of %s failed with %d diagnostic(s)", source_path, len(diags))
		_report(diags, source_path, as_json=args.json)
		return 1

	if not args.check:
		if args.output is not None:
			args.output.write_text(expanded, encoding="utf-8")
			logger.debug("wrote %s", args.output)
		elif not args.json:
			sys.stdout.write(expanded)
	if args.json:
		print(json.dumps({"exit_code": 0, "diagnostics": []}))
	return 0


if __name__ == "__main__":
	sys.exit(main())
