"""
drop_cell: Go-style `defer` for Python, built on a one-shot deferred cell.

	from drop_cell import defer, defers

	@defers
	def worker(queue):
		defer("log @ [] => queue.put(log)")
		log.append("working")
		return "done"        # queue receives ['working'] after the return value is computed

Runtime pieces (`DropCell`, `Captures`, `StateRef`, `DeferScope`) can also be
used directly, without the decorator.
"""

from drop_cell.cell import Captures, DropCell, Finalizer, StateRef
from drop_cell.decorator import defer, defers
from drop_cell.errors import DeferSyntaxError, DropCellError
from drop_cell.parser import parse_bindings, parse_defer
from drop_cell.scope import DeferScope, capture_state, deferring

__all__ = [
	"Captures",
	"DeferScope",
	"DeferSyntaxError",
	"DropCell",
	"DropCellError",
	"Finalizer",
	"StateRef",
	"capture_state",
	"defer",
	"deferring",
	"defers",
	"parse_bindings",
	"parse_defer",
]
