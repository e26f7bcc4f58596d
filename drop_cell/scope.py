# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Scope-guard API: build DropCells from (name, value) pairs without any macro.

	with DeferScope() as scope:
		cell = scope.defer(lambda ref: print(ref.value.v1, ref.value.v2), v1=[], v2=[])
		cell.state.v1.append("hello")

Captured names are not rebound in the caller; code keeps mutating the state
through the guard (`cell.state.<name>`). The `@defers` decorator is the
variant that does rebind them.
"""

from __future__ import annotations

from contextlib import ExitStack
from functools import wraps
from typing import Any, Callable

from drop_cell.cell import Captures, DropCell, Finalizer


def capture_state(bindings: dict[str, Any]) -> Any:
	"""Shape captured values by arity: nothing, the bare value, or `Captures`."""
	if not bindings:
		return None
	if len(bindings) == 1:
		return next(iter(bindings.values()))
	return Captures(tuple(bindings), tuple(bindings.values()))


class DeferScope:
	"""
	Owns DropCells and drops them in reverse creation order when the scope ends.

	Every registered cell is dropped even when a later-created cell's finalizer
	raised; the last exception propagates with the earlier ones chained as
	`__context__` (`ExitStack` semantics).
	"""

	def __init__(self) -> None:
		self._stack = ExitStack()

	def __enter__(self) -> "DeferScope":
		return self

	def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
		return self._stack.__exit__(exc_type, exc, tb)

	def defer(self, finalizer: Finalizer[Any], /, **bindings: Any) -> DropCell[Any]:
		"""Create a cell over the keyword bindings (in order) and register it."""
		return self.enter(DropCell(capture_state(bindings), finalizer))

	def enter(self, cell: DropCell[Any]) -> DropCell[Any]:
		"""Take ownership of an existing cell."""
		return self._stack.enter_context(cell)

	def pop_all(self) -> "DeferScope":
		"""Move every pending cell into a new scope; this one then drops nothing."""
		moved = DeferScope()
		moved._stack = self._stack.pop_all()
		return moved

	def close(self) -> None:
		self._stack.close()


def deferring(func: Callable) -> Callable:
	"""Go-style defer: the wrapped function receives `defer=` and its cells drop on return."""

	@wraps(func)
	def func_wrapper(*args: Any, **kwargs: Any) -> Any:
		with DeferScope() as scope:
			return func(*args, defer=scope.defer, **kwargs)

	return func_wrapper


__all__ = ["DeferScope", "capture_state", "deferring"]
