"""
drop_cell.core: shared spans/diagnostics/logging used across the front-end.

Modules:
  - span: best-effort source locations
  - diagnostics: structured error records for the CLI
  - logging: structlog setup for command-line runs
"""

__all__ = [
	"span",
	"diagnostics",
	"logging",
]
