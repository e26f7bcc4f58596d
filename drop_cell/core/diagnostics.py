"""
Common diagnostic structure for the expander and the CLI.

A message plus span/metadata; `to_json` renders the shape printed by
`drop-cell --json`.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .span import Span


@dataclass
class Diagnostic:
	"""Represents a defer-expansion diagnostic (error/warning/etc.)."""

	message: str
	code: str | None = None
	# Which stage produced the diagnostic: "parser" for binding-list/body
	# grammar problems, "lower" for alias misuse found while rewriting the
	# enclosing block, "source" when the input file itself does not parse.
	phase: str | None = None
	severity: str = "error"
	span: Span = field(default_factory=Span)  # Source location (Span() denotes unknown).
	notes: list[str] = field(default_factory=list)

	def __post_init__(self) -> None:
		if self.span is None:  # type: ignore[unreachable]
			self.span = Span()

	def to_json(self, *, default_phase: str, default_file: str | None = None) -> dict:
		"""Render to a structured JSON-friendly dict."""
		return {
			"phase": self.phase or default_phase,
			"message": self.message,
			"severity": self.severity,
			"file": self.span.file or default_file,
			"line": self.span.line,
			"column": self.span.column,
			"notes": list(self.notes),
		}


__all__ = ["Diagnostic"]
