# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Exceptions raised by the defer front-end and by DropCell ownership checks."""

from __future__ import annotations

from typing import Any

from drop_cell.core.diagnostics import Diagnostic
from drop_cell.core.span import Span


class DeferSyntaxError(ValueError):
	"""
	Malformed defer block.

	Raised while a `@defers` function is being expanded, i.e. before any code
	from the block has run. Carries a best-effort `span` so callers (the CLI in
	particular) can turn it into a structured diagnostic.
	"""

	def __init__(self, message: str, *, span: Span | None = None, phase: str = "parser") -> None:
		super().__init__(message)
		self.message = message
		self.span = span or Span()
		self.phase = phase

	def __str__(self) -> str:
		if self.span.line is None:
			return self.message
		return f"{self.span}: {self.message}"

	def to_diagnostic(self) -> Diagnostic:
		return Diagnostic(message=self.message, phase=self.phase, severity="error", span=self.span)


class DropCellError(RuntimeError):
	"""Ownership misuse of a DropCell: use after drop, or entering it twice."""

	def __init__(self, message: str, *, cell: Any = None) -> None:
		super().__init__(message)
		self.cell = cell


__all__ = ["DeferSyntaxError", "DropCellError"]
