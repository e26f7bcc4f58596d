# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Expansion of defer statements inside a function body.

Recognized statements (the callee must be spelled `defer`):

	defer("v1, v2 @ expr => body")      inline block, full binding grammar
	defer(expr)                          zero-binding one-liner
	with defer("v1, v2 @ expr"):         block form; the suite is the body
	with defer: / with defer():          block form without bindings

A defer statement consumes the rest of the block it appears in: the
remainder is wrapped in the cell's `with` (see `lowering`), and every later
use of a captured name in that remainder is rewritten to go through the
cell's state handle. Defers nested in any statement suite, in finalizer
bodies, or in nested functions are expanded the same way.
"""

from __future__ import annotations

import ast
import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from drop_cell.core.span import Span
from drop_cell.errors import DeferSyntaxError
from drop_cell.lowering import AliasFactory, lower_defer, stamp
from drop_cell.parser import DeferBlock, parse_bindings, parse_defer

logger = logging.getLogger(__name__)

DEFER_NAME = "defer"


@dataclass
class ExpandState:
	"""Per-function expansion state (counter + where errors point)."""

	filename: Optional[str] = None
	function: str = "<unknown>"
	next_index: int = 0
	expanded: List[int] = field(default_factory=list)

	def allocate(self) -> int:
		idx = self.next_index
		self.next_index += 1
		return idx


def _is_defer_ref(node: ast.AST) -> bool:
	return isinstance(node, ast.Name) and node.id == DEFER_NAME


def _string_arg(node: ast.expr) -> Optional[ast.Constant]:
	if isinstance(node, ast.Constant) and isinstance(node.value, str):
		return node
	return None


def _relocate(err: DeferSyntaxError, literal: ast.Constant, state: ExpandState) -> DeferSyntaxError:
	"""Map a span relative to a string literal's contents onto the source file."""
	span = err.span
	line = literal.lineno
	column = literal.col_offset + 1
	if span.line is not None:
		line = literal.lineno + span.line - 1
		if span.line == 1 and span.column is not None:
			# Skip the opening quote; prefixes and triple quotes make this approximate.
			column = literal.col_offset + 1 + span.column
		else:
			column = span.column
	relocated = DeferSyntaxError(
		err.message,
		span=Span(file=state.filename, line=line, column=column, raw=span.raw),
		phase=err.phase,
	)
	return relocated


def _error(message: str, node: ast.AST, state: ExpandState, *, phase: str = "lower") -> DeferSyntaxError:
	return DeferSyntaxError(message, span=Span.from_loc(node, file=state.filename), phase=phase)


def _shift_body(body: List[ast.stmt], literal: ast.Constant, block: DeferBlock) -> List[ast.stmt]:
	offset = literal.lineno + block.body_loc.line - 2
	for stmt in body:
		ast.increment_lineno(stmt, offset)
	return body


def match_defer(stmt: ast.stmt, state: ExpandState) -> Optional[DeferBlock]:
	"""Return the DeferBlock spelled by `stmt`, or None if it is not a defer statement."""
	if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Call) and _is_defer_ref(stmt.value.func):
		call = stmt.value
		if len(call.args) != 1 or call.keywords or isinstance(call.args[0], ast.Starred):
			raise _error("defer() takes exactly one positional argument", call, state, phase="parser")
		literal = _string_arg(call.args[0])
		if literal is None:
			return DeferBlock(bindings=[], body=[ast.copy_location(ast.Expr(value=call.args[0]), stmt)])
		try:
			block = parse_defer(literal.value)
		except DeferSyntaxError as err:
			raise _relocate(err, literal, state) from None
		_shift_body(block.body, literal, block)
		return block
	if isinstance(stmt, (ast.With, ast.AsyncWith)):
		items = [
			item
			for item in stmt.items
			if _is_defer_ref(item.context_expr)
			or (isinstance(item.context_expr, ast.Call) and _is_defer_ref(item.context_expr.func))
		]
		if not items:
			return None
		if isinstance(stmt, ast.AsyncWith):
			raise _error("'async with defer' is not supported; finalizers run synchronously", stmt, state, phase="parser")
		if len(stmt.items) != 1:
			raise _error("'with defer' cannot be combined with other context managers", stmt, state, phase="parser")
		item = items[0]
		if item.optional_vars is not None:
			raise _error("'with defer' does not bind an 'as' target", item.optional_vars, state, phase="parser")
		header = item.context_expr
		bindings = []
		if isinstance(header, ast.Call):
			if header.keywords or len(header.args) > 1:
				raise _error("'with defer(...)' takes at most one binding-list string", header, state, phase="parser")
			if header.args:
				literal = _string_arg(header.args[0])
				if literal is None:
					raise _error("'with defer(...)' header must be a string literal", header.args[0], state, phase="parser")
				try:
					bindings = parse_bindings(literal.value)
				except DeferSyntaxError as err:
					raise _relocate(err, literal, state) from None
		return DeferBlock(bindings=bindings, body=list(stmt.body))
	return None


def _bound_names(args: ast.arguments) -> set[str]:
	names = {a.arg for a in args.posonlyargs + args.args + args.kwonlyargs}
	if args.vararg is not None:
		names.add(args.vararg.arg)
	if args.kwarg is not None:
		names.add(args.kwarg.arg)
	return names


def _target_names(node: ast.AST) -> set[str]:
	return {n.id for n in ast.walk(node) if isinstance(n, ast.Name)}


class _LocalBinder(ast.NodeVisitor):
	"""Collects the names a function or class body binds in its own scope."""

	def __init__(self) -> None:
		self.bound: set[str] = set()
		self.declared: set[str] = set()

	def visit_Name(self, node: ast.Name) -> None:
		if isinstance(node.ctx, (ast.Store, ast.Del)):
			self.bound.add(node.id)

	def _visit_defaults(self, args: ast.arguments) -> None:
		for default in args.defaults + [d for d in args.kw_defaults if d is not None]:
			self.visit(default)

	def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
		self.bound.add(node.name)
		for decorator in node.decorator_list:
			self.visit(decorator)
		self._visit_defaults(node.args)

	visit_AsyncFunctionDef = visit_FunctionDef

	def visit_Lambda(self, node: ast.Lambda) -> None:
		self._visit_defaults(node.args)

	def visit_ClassDef(self, node: ast.ClassDef) -> None:
		self.bound.add(node.name)
		for child in node.decorator_list + node.bases + node.keywords:
			self.visit(child)

	def _visit_comprehension(self, node: ast.AST) -> None:
		# Only assignment expressions leak out of a comprehension.
		for child in ast.walk(node):
			if isinstance(child, ast.NamedExpr):
				self.bound.add(child.target.id)

	visit_ListComp = _visit_comprehension
	visit_SetComp = _visit_comprehension
	visit_GeneratorExp = _visit_comprehension
	visit_DictComp = _visit_comprehension

	def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
		if node.name:
			self.bound.add(node.name)
		self.generic_visit(node)

	def visit_alias(self, node: ast.alias) -> None:
		if node.name != "*":
			self.bound.add((node.asname or node.name).split(".")[0])

	def visit_MatchAs(self, node: ast.MatchAs) -> None:
		if node.name:
			self.bound.add(node.name)
		self.generic_visit(node)

	def visit_MatchStar(self, node: ast.MatchStar) -> None:
		if node.name:
			self.bound.add(node.name)

	def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
		if node.rest:
			self.bound.add(node.rest)
		self.generic_visit(node)

	def visit_Global(self, node: ast.Global) -> None:
		self.declared.update(node.names)

	visit_Nonlocal = visit_Global


def _scope_locals(body: List[ast.stmt]) -> set[str]:
	"""Names local to a nested function or class body (minus global/nonlocal declarations)."""
	binder = _LocalBinder()
	for stmt in body:
		binder.visit(stmt)
	return binder.bound - binder.declared


class DeferExpander(ast.NodeTransformer):
	"""Expands defer statements and rewrites aliased names within one scope."""

	def __init__(
		self,
		state: ExpandState,
		aliases: Optional[Mapping[str, AliasFactory]] = None,
		*,
		function_aliases: Optional[Mapping[str, AliasFactory]] = None,
	) -> None:
		self.state = state
		self.aliases: Dict[str, AliasFactory] = dict(aliases or {})
		# Inside a class body: what functions defined there see (class scope is skipped).
		self.function_aliases = function_aliases

	def _child(self, *, drop: Iterable[str] = (), add: Optional[Mapping[str, AliasFactory]] = None) -> "DeferExpander":
		dropped = set(drop)
		aliases = {k: v for k, v in self.aliases.items() if k not in dropped}
		aliases.update(add or {})
		return DeferExpander(self.state, aliases)

	def _function_child(self, drop: Iterable[str]) -> "DeferExpander":
		base = self.function_aliases if self.function_aliases is not None else self.aliases
		dropped = set(drop)
		return DeferExpander(self.state, {k: v for k, v in base.items() if k not in dropped})

	# -- statement lists -------------------------------------------------

	def expand_block(self, stmts: List[ast.stmt]) -> List[ast.stmt]:
		out: List[ast.stmt] = []
		for idx, stmt in enumerate(stmts):
			block = match_defer(stmt, self.state)
			if block is None:
				out.append(self.visit(stmt))
				continue
			out.extend(self._expand_defer(block, stmt, stmts[idx + 1 :]))
			break
		return out

	def _expand_defer(self, block: DeferBlock, stmt: ast.stmt, rest: List[ast.stmt]) -> List[ast.stmt]:
		index = self.state.allocate()
		sources = [self.visit(b.expr) for b in block.bindings]
		fin_body = self._child(drop=block.names).expand_block(block.body)
		lowered = lower_defer(block.names, sources, fin_body, index=index, anchor=stmt)
		remainder = self._child(add=lowered.aliases).expand_block(rest)
		self.state.expanded.append(block.arity)
		logger.debug(
			"expanded defer block #%d in %s (%d binding(s): %s)",
			index,
			self.state.function,
			block.arity,
			", ".join(block.names) or "-",
		)
		return [lowered.finalizer, lowered.scope(remainder, stmt)]

	def generic_visit(self, node: ast.AST) -> ast.AST:
		for name, old in ast.iter_fields(node):
			if isinstance(old, list):
				if old and all(isinstance(v, ast.stmt) for v in old):
					setattr(node, name, self.expand_block(old))
					continue
				new_values = []
				for value in old:
					if isinstance(value, ast.AST):
						value = self.visit(value)
						if value is None:
							continue
					new_values.append(value)
				old[:] = new_values
			elif isinstance(old, ast.AST):
				setattr(node, name, self.visit(old))
		return node

	# -- names -----------------------------------------------------------

	def visit_Name(self, node: ast.Name) -> ast.expr:
		alias = self.aliases.get(node.id)
		if alias is None:
			return node
		if isinstance(node.ctx, ast.Del):
			raise _error(f"cannot delete captured name {node.id!r}", node, self.state)
		replacement = alias(node.ctx)
		stamp(replacement, node)
		return replacement

	def _reject_rebind(self, names: Iterable[str], node: ast.AST, how: str) -> None:
		for name in names:
			if name in self.aliases:
				raise _error(f"captured name {name!r} cannot be rebound by {how}", node, self.state)

	def visit_NamedExpr(self, node: ast.NamedExpr) -> ast.AST:
		self._reject_rebind([node.target.id], node, "an assignment expression")
		return self.generic_visit(node)

	def visit_MatchAs(self, node: ast.MatchAs) -> ast.AST:
		if node.name:
			self._reject_rebind([node.name], node, "a match pattern")
		return self.generic_visit(node)

	def visit_MatchStar(self, node: ast.MatchStar) -> ast.AST:
		if node.name:
			self._reject_rebind([node.name], node, "a match pattern")
		return node

	def visit_ExceptHandler(self, node: ast.ExceptHandler) -> ast.AST:
		if node.name:
			self._reject_rebind([node.name], node, "'except ... as'")
		return self.generic_visit(node)

	def visit_Global(self, node: ast.Global) -> ast.AST:
		self._reject_rebind(node.names, node, "a 'global' declaration")
		return node

	def visit_Nonlocal(self, node: ast.Nonlocal) -> ast.AST:
		self._reject_rebind(node.names, node, "a 'nonlocal' declaration")
		return node

	def visit_Import(self, node: ast.Import) -> ast.AST:
		self._reject_rebind([(a.asname or a.name).split(".")[0] for a in node.names], node, "an import")
		return node

	visit_ImportFrom = visit_Import

	# -- nested scopes ---------------------------------------------------

	def _visit_signature(self, node: ast.FunctionDef | ast.AsyncFunctionDef | ast.Lambda) -> None:
		args = node.args
		args.defaults = [self.visit(d) for d in args.defaults]
		args.kw_defaults = [self.visit(d) if d is not None else None for d in args.kw_defaults]

	def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.AST:
		self._reject_rebind([node.name], node, "a function definition")
		# The enclosing expansion covers nested functions already.
		node.decorator_list = [self.visit(d) for d in node.decorator_list if not is_defers_decorator(d)]
		self._visit_signature(node)
		inner = self._function_child(_bound_names(node.args) | _scope_locals(node.body))
		node.body = inner.expand_block(node.body)
		return node

	visit_AsyncFunctionDef = visit_FunctionDef

	def visit_Lambda(self, node: ast.Lambda) -> ast.AST:
		self._visit_signature(node)
		node.body = self._function_child(_bound_names(node.args)).visit(node.body)
		return node

	def visit_ClassDef(self, node: ast.ClassDef) -> ast.AST:
		self._reject_rebind([node.name], node, "a class definition")
		node.decorator_list = [self.visit(d) for d in node.decorator_list]
		node.bases = [self.visit(b) for b in node.bases]
		node.keywords = [self.visit(k) for k in node.keywords]
		class_locals = _scope_locals(node.body)
		inner = DeferExpander(
			self.state,
			{k: v for k, v in self.aliases.items() if k not in class_locals},
			function_aliases=self.function_aliases if self.function_aliases is not None else self.aliases,
		)
		node.body = inner.expand_block(node.body)
		return node

	def _visit_comprehension(self, node: ast.AST) -> ast.AST:
		generators: List[ast.comprehension] = node.generators  # type: ignore[attr-defined]
		# The first iterable is evaluated in the enclosing scope.
		generators[0].iter = self.visit(generators[0].iter)
		targets: set[str] = set()
		for gen in generators:
			targets |= _target_names(gen.target)
		inner = self._child(drop=targets)
		for pos, gen in enumerate(generators):
			if pos:
				gen.iter = inner.visit(gen.iter)
			gen.ifs = [inner.visit(cond) for cond in gen.ifs]
		for name in ("elt", "key", "value"):
			if hasattr(node, name):
				setattr(node, name, inner.visit(getattr(node, name)))
		return node

	visit_ListComp = _visit_comprehension
	visit_SetComp = _visit_comprehension
	visit_GeneratorExp = _visit_comprehension
	visit_DictComp = _visit_comprehension


def expand_function(node: ast.FunctionDef | ast.AsyncFunctionDef, *, filename: Optional[str] = None) -> ExpandState:
	"""Expand every defer in `node` in place; returns the expansion state."""
	state = ExpandState(filename=filename, function=node.name)
	expander = DeferExpander(state)
	node.body = expander.expand_block(node.body)
	return state


def is_defers_decorator(node: ast.expr) -> bool:
	if isinstance(node, ast.Call):
		node = node.func
	if isinstance(node, ast.Name):
		return node.id == "defers"
	return isinstance(node, ast.Attribute) and node.attr == "defers"


def _outermost_defers_functions(node: ast.AST) -> Iterable[ast.FunctionDef | ast.AsyncFunctionDef]:
	for child in ast.iter_child_nodes(node):
		if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)) and any(
			is_defers_decorator(d) for d in child.decorator_list
		):
			yield child
		else:
			yield from _outermost_defers_functions(child)


def expand_module(tree: ast.Module, *, filename: Optional[str] = None) -> List[DeferSyntaxError]:
	"""
	Expand every function decorated with `defers` in a parsed module.

	The decorator is removed from expanded functions. Errors are collected
	per function (a failing function is left untouched) so a whole file can
	be reported in one pass.
	"""
	errors: List[DeferSyntaxError] = []
	for node in _outermost_defers_functions(tree):
		snapshot = copy.deepcopy(node)
		try:
			expand_function(snapshot, filename=filename)
		except DeferSyntaxError as err:
			errors.append(err)
			continue
		node.body = snapshot.body
		node.decorator_list = [d for d in node.decorator_list if not is_defers_decorator(d)]
	ast.fix_missing_locations(tree)
	return errors


__all__ = ["DeferExpander", "ExpandState", "expand_function", "expand_module", "is_defers_decorator", "match_defer"]
