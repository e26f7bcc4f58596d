# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Lightweight source span representation used by diagnostics.

A Span wraps whatever location object the front-end has at hand (a lark token,
a Python `ast` node, a parser `Located`) and keeps the file/line/column it could
extract from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class Span:
	"""Represents a source span (best-effort file/line/column plus raw parser loc)."""

	file: Optional[str] = None
	line: Optional[int] = None
	column: Optional[int] = None
	end_line: Optional[int] = None
	end_column: Optional[int] = None
	raw: Any = None

	@classmethod
	def from_loc(cls, loc: Any, *, file: Optional[str] = None) -> "Span":
		"""
		Construct a Span from an existing parser/location object.

		Python `ast` nodes carry `lineno`/`col_offset` (0-based columns) while
		lark tokens and `Located` carry `line`/`column` (1-based), so both
		spellings are probed.
		"""
		if loc is None:
			return cls(file=file)
		if isinstance(loc, cls):
			return loc
		line = getattr(loc, "line", None)
		column = getattr(loc, "column", None)
		end_line = getattr(loc, "end_line", None)
		end_column = getattr(loc, "end_column", None)
		if line is None and hasattr(loc, "lineno"):
			line = loc.lineno
			col = getattr(loc, "col_offset", None)
			column = col + 1 if col is not None else None
			end_line = getattr(loc, "end_lineno", None)
			end_col = getattr(loc, "end_col_offset", None)
			end_column = end_col + 1 if end_col is not None else None
		return cls(
			file=file or getattr(loc, "file", None) or getattr(loc, "filename", None),
			line=line,
			column=column,
			end_line=end_line,
			end_column=end_column,
			raw=loc,
		)

	def __str__(self) -> str:
		where = self.file or "<unknown>"
		if self.line is None:
			return where
		if self.column is None:
			return f"{where}:{self.line}"
		return f"{where}:{self.line}:{self.column}"


__all__ = ["Span"]
