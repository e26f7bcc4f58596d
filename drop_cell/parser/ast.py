from __future__ import annotations

import ast as py_ast
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class Located:
	"""1-based line/column, relative to the defer source text."""

	line: int
	column: int


@dataclass
class Binding:
	"""
	One `name [@ source]` clause.

	`source` is the source expression text exactly as written after `@`, or
	None when the clause is a bare name (the source is then the variable
	currently called `name`). `expr` is the parsed source expression in both
	cases.
	"""

	name: str
	source: Optional[str]
	expr: py_ast.expr
	loc: Located

	@property
	def explicit(self) -> bool:
		return self.source is not None


@dataclass
class DeferBlock:
	bindings: List[Binding]
	body: List[py_ast.stmt]
	loc: Located = field(default_factory=lambda: Located(1, 1))
	# Where line 1 of the parsed body sits in the defer source text.
	body_loc: Located = field(default_factory=lambda: Located(1, 1))
	# Body text for inline/string blocks; None when the body came from a
	# `with defer(...):` suite.
	body_source: Optional[str] = None

	@property
	def arity(self) -> int:
		return len(self.bindings)

	@property
	def names(self) -> List[str]:
		return [b.name for b in self.bindings]
