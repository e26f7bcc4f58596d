# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Arity-specific code generation for one defer block.

Given the binding names, the (already alias-rewritten) source expressions and
the finalizer body, build:

| bindings | captured state             | finalizer parameter                 | alias after creation         |
|----------|----------------------------|-------------------------------------|------------------------------|
| 0        | `None`                     | `_defer_unit`, ignored              | none                         |
| 1        | the source value           | `_defer_ref`; `v = _defer_ref.value` | `v` -> `_defer_ref_N.value`    |
| n > 1    | `Captures(names, values)`  | `_defer_ref`; `v1, .. = .value`     | `vi` -> `_defer_ref_N.value[i]` |

and the scope statement

	with _defer_DropCell(<capture>, _defer_fn_N) as _defer_cell_N:
		_defer_ref_N = _defer_cell_N.state_mut()
		<rest of the enclosing block>

Entering the cell is what makes it live; leaving the `with` (fall-through,
return, break/continue, exception) drops it.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence

from drop_cell.parser import RESERVED_PREFIX

HELPER_CELL = f"{RESERVED_PREFIX}DropCell"
HELPER_CAPTURES = f"{RESERVED_PREFIX}Captures"
HELPERS = (HELPER_CELL, HELPER_CAPTURES)

UNIT_PARAM = f"{RESERVED_PREFIX}unit"
REF_PARAM = f"{RESERVED_PREFIX}ref"

AliasFactory = Callable[[ast.expr_context], ast.expr]


def _load(name: str) -> ast.Name:
	return ast.Name(id=name, ctx=ast.Load())


def _state_value(ref_name: str, ctx: ast.expr_context) -> ast.Attribute:
	return ast.Attribute(value=_load(ref_name), attr="value", ctx=ctx)


def _single_alias(ref_name: str) -> AliasFactory:
	return lambda ctx: _state_value(ref_name, ctx)


def _tuple_alias(ref_name: str, index: int) -> AliasFactory:
	return lambda ctx: ast.Subscript(
		value=_state_value(ref_name, ast.Load()),
		slice=ast.Constant(value=index),
		ctx=ctx,
	)


def stamp(node: ast.AST, anchor: ast.AST) -> ast.AST:
	"""Give every node under `node` the source position of `anchor`."""
	for child in ast.walk(node):
		if "lineno" in child._attributes:
			ast.copy_location(child, anchor)
	return node


@dataclass
class LoweredDefer:
	index: int
	names: List[str]
	capture: ast.expr
	finalizer: ast.FunctionDef
	aliases: Dict[str, AliasFactory] = field(default_factory=dict)

	@property
	def fn_name(self) -> str:
		return f"{RESERVED_PREFIX}fn_{self.index}"

	@property
	def cell_name(self) -> str:
		return f"{RESERVED_PREFIX}cell_{self.index}"

	@property
	def ref_name(self) -> str:
		return f"{RESERVED_PREFIX}ref_{self.index}"

	def scope(self, rest: List[ast.stmt], anchor: ast.AST) -> ast.With:
		"""Wrap the remainder of the enclosing block in the cell's lifetime."""
		stmt = ast.parse(
			f"with {HELPER_CELL}(None, {self.fn_name}) as {self.cell_name}:\n"
			+ (f"    {self.ref_name} = {self.cell_name}.state_mut()\n" if self.names else "    pass\n")
		).body[0]
		stmt.items[0].context_expr.args[0] = self.capture
		stamp(stmt, anchor)
		if self.names:
			stmt.body = stmt.body + rest
		else:
			stmt.body = rest or stmt.body
		return stmt


def lower_defer(
	names: Sequence[str],
	sources: Sequence[ast.expr],
	body: List[ast.stmt],
	*,
	index: int,
	anchor: ast.AST,
) -> LoweredDefer:
	"""Generate capture, finalizer and alias shapes for `names` (see module docstring)."""
	names = list(names)
	if len(names) != len(sources):
		raise ValueError(f"lower_defer: {len(names)} names for {len(sources)} sources")
	fn_name = f"{RESERVED_PREFIX}fn_{index}"
	ref_name = f"{RESERVED_PREFIX}ref_{index}"

	if not names:
		capture: ast.expr = ast.Constant(value=None)
		finalizer = ast.parse(f"def {fn_name}({UNIT_PARAM}):\n    pass\n").body[0]
		aliases: Dict[str, AliasFactory] = {}
	elif len(names) == 1:
		capture = sources[0]
		finalizer = ast.parse(f"def {fn_name}({REF_PARAM}):\n    {names[0]} = {REF_PARAM}.value\n").body[0]
		aliases = {names[0]: _single_alias(ref_name)}
	else:
		capture = ast.Call(
			func=_load(HELPER_CAPTURES),
			args=[
				ast.Tuple(elts=[ast.Constant(value=n) for n in names], ctx=ast.Load()),
				ast.Tuple(elts=list(sources), ctx=ast.Load()),
			],
			keywords=[],
		)
		targets = ", ".join(names)
		finalizer = ast.parse(f"def {fn_name}({REF_PARAM}):\n    ({targets},) = {REF_PARAM}.value\n").body[0]
		aliases = {name: _tuple_alias(ref_name, i) for i, name in enumerate(names)}

	stamp(finalizer, anchor)
	stamp(capture, anchor)
	if names:
		finalizer.body = finalizer.body + body
	else:
		finalizer.body = body or finalizer.body
	return LoweredDefer(index=index, names=names, capture=capture, finalizer=finalizer, aliases=aliases)


__all__ = ["AliasFactory", "HELPERS", "HELPER_CAPTURES", "HELPER_CELL", "LoweredDefer", "lower_defer", "stamp"]
