# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
The `@defers` decorator and the `defer` marker.

`defers` reads the function's source, expands its defer statements (see
`drop_cell.expand`), and compiles the result into a new function that shares
the original's globals, closure cells, defaults and metadata. It must be the
innermost decorator, since it recompiles from source.

`defer` itself is only a marker: the expansion removes every statement that
spells it, so reaching it at runtime means it was used in a function that was
not decorated.
"""

from __future__ import annotations

import __future__
import ast
import functools
import inspect
import logging
import sys
import types
from collections import deque
from typing import Callable, Dict, Optional, TypeVar

from drop_cell.cell import Captures, DropCell
from drop_cell.core.span import Span
from drop_cell.errors import DeferSyntaxError
from drop_cell.expand import expand_function
from drop_cell.lowering import HELPER_CAPTURES, HELPER_CELL, HELPERS
from drop_cell.parser import RESERVED_PREFIX

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable)

_FACTORY = f"{RESERVED_PREFIX}factory"
_HELPER_VALUES = {HELPER_CELL: DropCell, HELPER_CAPTURES: Captures}
_FUTURE_FLAGS = functools.reduce(
	lambda acc, name: acc | getattr(__future__, name).compiler_flag, __future__.all_feature_names, 0
)
# How far up the stack `defers` looks for the function that encloses the decorated one.
_FRAME_SEARCH_DEPTH = 8


class _Unbound:
	def __repr__(self) -> str:
		return "<unbound>"


_UNBOUND = _Unbound()


class _DeferMarker:
	"""Stand-in for `defer` outside an expanded function."""

	def _misuse(self) -> DeferSyntaxError:
		return DeferSyntaxError(
			"defer used outside a function decorated with @defers",
			phase="lower",
		)

	def __call__(self, *args, **kwargs):
		raise self._misuse()

	def __enter__(self):
		raise self._misuse()

	def __exit__(self, exc_type, exc, tb):
		return None

	def __repr__(self) -> str:
		return "defer"


defer = _DeferMarker()


def _function_node(fn: types.FunctionType) -> tuple[ast.FunctionDef | ast.AsyncFunctionDef, str]:
	try:
		lines, firstlineno = inspect.getsourcelines(fn)
	except (OSError, TypeError) as err:
		raise DeferSyntaxError(
			f"cannot read the source of {fn.__qualname__}: {err}",
			phase="source",
		) from err
	source = "".join(lines)
	prefix = 0
	if lines and lines[0][:1].isspace():
		# Methods and nested functions are indented; give them a block to sit in.
		source = "if 1:\n" + source
		prefix = 1
	filename = fn.__code__.co_filename
	try:
		module = ast.parse(source, filename=filename)
	except SyntaxError as err:
		raise DeferSyntaxError(
			f"cannot parse the source of {fn.__qualname__}: {err.msg}",
			span=Span(file=filename, line=firstlineno),
			phase="source",
		) from err
	body = module.body[0].body if prefix else module.body
	node = next(
		(n for n in body if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef)) and n.name == fn.__name__),
		None,
	)
	if node is None:
		raise DeferSyntaxError(
			f"cannot locate the definition of {fn.__qualname__} in its source",
			span=Span(file=filename, line=firstlineno),
			phase="source",
		)
	ast.increment_lineno(node, firstlineno - 1 - prefix)
	return node, filename


def _class_name(fn: types.FunctionType) -> Optional[str]:
	parts = fn.__qualname__.split(".")
	if len(parts) < 2 or parts[-2] == "<locals>":
		return None
	return parts[-2]


def _enclosing_locals(fn: types.FunctionType) -> Dict[str, object]:
	"""
	Snapshot the local variables of the function that defines `fn`.

	A name that appears only inside a defer string never became a closure cell
	of `fn`, so after expansion it has to be supplied from here. Names that are
	not assigned yet map to `_UNBOUND`. Empty for module-level functions and
	methods of module-level classes.
	"""
	qualname = fn.__qualname__
	if ".<locals>." not in qualname:
		return {}
	outer = qualname.rsplit(".<locals>.", 1)[0].rsplit(".", 1)[-1]
	# 0 is this function, 1 is `defers`, 2 is whoever applied the decorator.
	frame = sys._getframe(2)
	try:
		for _ in range(_FRAME_SEARCH_DEPTH):
			if frame is None:
				break
			code = frame.f_code
			if code.co_name == outer and code.co_flags & inspect.CO_OPTIMIZED:
				values = frame.f_locals
				return {
					name: values[name] if name in values else _UNBOUND
					for name in code.co_varnames + code.co_cellvars
				}
			frame = frame.f_back
	finally:
		del frame
	return {}


def _captured_names(
	fn: types.FunctionType,
	node: ast.FunctionDef | ast.AsyncFunctionDef,
	enclosing: Dict[str, object],
) -> list[str]:
	"""Enclosing locals referenced by the expanded code but not closed over by `fn`."""
	skip = set(fn.__code__.co_freevars) | set(HELPERS)
	names = {n.id for n in ast.walk(node) if isinstance(n, ast.Name)}
	return sorted(name for name in names if name in enclosing and name not in skip)


def _factory_module(
	fn: types.FunctionType,
	node: ast.FunctionDef | ast.AsyncFunctionDef,
	extra: list[str],
) -> ast.Module:
	"""
	Wrap `node` so the compiler sees the original free variables as free.

	The factory is never called; only the nested code object is kept. Methods
	are additionally placed in a class of the same name so private names are
	mangled the same way and zero-argument `super()` still finds `__class__`.
	"""
	params = [name for name in fn.__code__.co_freevars if name != "__class__"] + extra + list(HELPERS)
	factory = ast.parse(f"def {_FACTORY}({', '.join(params)}):\n    pass\n").body[0]
	inner: ast.stmt = node
	class_name = _class_name(fn)
	if class_name is not None:
		inner = ast.parse(f"class {class_name}:\n    pass\n").body[0]
		inner.body = [node]
	factory.body = [inner]
	for wrapper in (factory, inner):
		ast.copy_location(wrapper, node)
	module = ast.Module(body=[factory], type_ignores=[])
	return ast.fix_missing_locations(module)


def _find_code(root: types.CodeType, name: str) -> types.CodeType:
	todo = deque([root])
	while todo:
		code = todo.popleft()
		for const in code.co_consts:
			if isinstance(const, types.CodeType):
				if const.co_name == name and const.co_name != _FACTORY:
					return const
				todo.append(const)
	raise DeferSyntaxError(f"expanded code for {name!r} went missing", phase="lower")


def _closure(fn: types.FunctionType, code: types.CodeType, enclosing: Dict[str, object]) -> tuple:
	cells: Dict[str, types.CellType] = dict(zip(fn.__code__.co_freevars, fn.__closure__ or ()))
	for name, value in _HELPER_VALUES.items():
		cells[name] = types.CellType(value)
	for name in code.co_freevars:
		if name in cells or name not in enclosing:
			continue
		value = enclosing[name]
		if value is _UNBOUND:
			raise DeferSyntaxError(
				f"{fn.__qualname__}: {name!r} is used in a defer block but is not assigned"
				" in the enclosing function when @defers runs",
				phase="lower",
			)
		# Snapshot: rebinding the name in the enclosing function afterwards is not seen.
		cells[name] = types.CellType(value)
	missing = [name for name in code.co_freevars if name not in cells]
	if missing:
		raise DeferSyntaxError(
			f"{fn.__qualname__}: no closure cell for {', '.join(missing)}",
			phase="lower",
		)
	return tuple(cells[name] for name in code.co_freevars)


def defers(fn: F) -> F:
	"""
	Enable `defer` statements inside `fn`.

	Returns `fn` itself if it contains no defer statement. Raises
	DeferSyntaxError (at decoration time) for malformed defer blocks.
	"""
	if isinstance(fn, (staticmethod, classmethod)):
		raise TypeError("@defers must be applied below @staticmethod/@classmethod")
	if not isinstance(fn, types.FunctionType):
		raise TypeError(f"@defers expects a function, got {type(fn).__name__}")
	if fn.__name__ == "<lambda>":
		raise DeferSyntaxError("@defers cannot be applied to a lambda", phase="source")
	if inspect.unwrap(fn) is not fn:
		raise DeferSyntaxError(
			f"@defers must be the innermost decorator on {fn.__qualname__}",
			phase="source",
		)

	node, filename = _function_node(fn)
	node.decorator_list = []
	state = expand_function(node, filename=filename)
	if not state.expanded:
		logger.debug("no defer statements in %s", fn.__qualname__)
		return fn

	enclosing = _enclosing_locals(fn)
	module = _factory_module(fn, node, _captured_names(fn, node, enclosing))
	flags = fn.__code__.co_flags & _FUTURE_FLAGS
	code = _find_code(compile(module, filename, "exec", flags=flags, dont_inherit=True), fn.__name__)
	new = types.FunctionType(code, fn.__globals__, fn.__name__, fn.__defaults__, _closure(fn, code, enclosing))
	new.__kwdefaults__ = fn.__kwdefaults__
	functools.update_wrapper(new, fn)
	logger.debug(
		"recompiled %s with %d defer block(s) (arities %s)",
		fn.__qualname__,
		len(state.expanded),
		state.expanded,
	)
	return new  # type: ignore[return-value]


__all__ = ["defer", "defers"]
