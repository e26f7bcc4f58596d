# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Deferred cell: captured state paired with a one-shot finalizer.

A `DropCell` owns a value of arbitrary shape plus a finalizer. The finalizer
runs exactly once, when the scope that entered the cell ends:

	with DropCell([], lambda ref: print(ref.value)) as cell:
		cell.state.append("hello")
	# prints ['hello']

The finalizer slot is written once in `__init__` and read-and-cleared once in
`__exit__`; after the finalizer returns (or raises) the state is released and
every further access raises `DropCellError`. There is no way to run a cell
early or to cancel it. Moving the obligation elsewhere goes through
`DeferScope.pop_all()`.
"""

from __future__ import annotations

import operator
from typing import Any, Callable, Generic, Iterator, Sequence, TypeVar

from drop_cell.errors import DropCellError

T = TypeVar("T")


class _Released:
	__slots__ = ()

	def __repr__(self) -> str:
		return "<released>"


_RELEASED: Any = _Released()


class Captures:
	"""
	Ordered, fixed-size, mutable record of captured values.

	This is the captured-state shape for two or more bindings. Positions follow
	binding order; each slot can also be reached by its binding name, either
	as an item (`caps["v2"]`) or as an attribute (`caps.v2`). Unpacking yields
	the values in order, so `v1, v2 = caps` destructures it.
	"""

	__slots__ = ("_fields", "_values")

	def __init__(self, names: Sequence[str], values: Sequence[Any]) -> None:
		names = tuple(names)
		values = list(values)
		if len(names) != len(values):
			raise ValueError(f"Captures: {len(names)} names for {len(values)} values")
		if len(set(names)) != len(names):
			raise ValueError(f"Captures: duplicate names in {names!r}")
		object.__setattr__(self, "_fields", names)
		object.__setattr__(self, "_values", values)

	@property
	def _names(self) -> tuple[str, ...]:
		return self._fields

	def _asdict(self) -> dict[str, Any]:
		return dict(zip(self._fields, self._values))

	def _position(self, key: int | str) -> int:
		if isinstance(key, str):
			try:
				return self._fields.index(key)
			except ValueError:
				raise KeyError(key) from None
		idx = operator.index(key)
		if not -len(self._values) <= idx < len(self._values):
			raise IndexError(f"Captures index {idx} out of range")
		return idx

	def __getitem__(self, key: int | str) -> Any:
		return self._values[self._position(key)]

	def __setitem__(self, key: int | str, value: Any) -> None:
		self._values[self._position(key)] = value

	def __getattr__(self, name: str) -> Any:
		# Only reached when regular lookup fails, i.e. for binding names.
		try:
			fields = object.__getattribute__(self, "_fields")
		except AttributeError:
			raise AttributeError(name) from None
		if name in fields:
			return self._values[fields.index(name)]
		raise AttributeError(f"Captures has no binding named {name!r}")

	def __setattr__(self, name: str, value: Any) -> None:
		if name in self._fields:
			self._values[self._fields.index(name)] = value
			return
		raise AttributeError(f"Captures has no binding named {name!r}")

	def __iter__(self) -> Iterator[Any]:
		return iter(list(self._values))

	def __len__(self) -> int:
		return len(self._values)

	def __eq__(self, other: object) -> bool:
		if not isinstance(other, Captures):
			return NotImplemented
		return self._fields == other._fields and self._values == other._values

	__hash__ = None  # type: ignore[assignment]

	def __repr__(self) -> str:
		inner = ", ".join(f"{name}={value!r}" for name, value in zip(self._fields, self._values))
		return f"Captures({inner})"


class StateRef(Generic[T]):
	"""Mutable handle into a DropCell's captured slot (`.value` reads and rebinds it)."""

	__slots__ = ("_cell",)

	def __init__(self, cell: "DropCell[T]") -> None:
		self._cell = cell

	@property
	def value(self) -> T:
		return self._cell._load()

	@value.setter
	def value(self, new: T) -> None:
		self._cell._store(new)

	def __repr__(self) -> str:
		return f"StateRef({self._cell._state!r})"


Finalizer = Callable[[StateRef[T]], None]


class DropCell(Generic[T]):
	"""Owns captured state and a finalizer that consumes it once, on scope exit."""

	__slots__ = ("_state", "_finalizer", "_entered")

	def __init__(self, state: T, finalizer: Finalizer[T]) -> None:
		if not callable(finalizer):
			raise TypeError(f"DropCell finalizer must be callable, got {type(finalizer).__name__}")
		self._state = state
		self._finalizer: Finalizer[T] | None = finalizer
		self._entered = False

	@property
	def dropped(self) -> bool:
		return self._finalizer is None

	@property
	def state(self) -> T:
		return self._load()

	@state.setter
	def state(self, value: T) -> None:
		self._store(value)

	def state_mut(self) -> StateRef[T]:
		"""Return an exclusive mutable handle to the stored state."""
		self._load()
		return StateRef(self)

	def _load(self) -> T:
		if self._state is _RELEASED:
			raise DropCellError("DropCell state used after the cell was dropped", cell=self)
		return self._state

	def _store(self, value: T) -> None:
		if self._state is _RELEASED:
			raise DropCellError("DropCell state used after the cell was dropped", cell=self)
		self._state = value

	def __enter__(self) -> "DropCell[T]":
		if self._finalizer is None:
			raise DropCellError("DropCell was already dropped", cell=self)
		if self._entered:
			raise DropCellError("DropCell is already owned by an active scope", cell=self)
		self._entered = True
		return self

	def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
		finalizer, self._finalizer = self._finalizer, None
		if finalizer is None:
			return None
		try:
			finalizer(StateRef(self))
		finally:
			self._state = _RELEASED
		return None

	def __repr__(self) -> str:
		status = "dropped" if self._finalizer is None else "live"
		return f"<DropCell {status} state={self._state!r}>"


__all__ = ["Captures", "DropCell", "StateRef", "Finalizer"]
