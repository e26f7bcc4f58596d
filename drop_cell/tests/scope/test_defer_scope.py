import pytest

from drop_cell.cell import Captures
from drop_cell.scope import DeferScope, capture_state, deferring


def test_capture_state_shapes():
	assert capture_state({}) is None
	assert capture_state({"v": [1]}) == [1]
	caps = capture_state({"v1": 1, "v2": 2})
	assert isinstance(caps, Captures)
	assert caps._names == ("v1", "v2")


def test_cells_drop_in_reverse_order():
	order = []
	with DeferScope() as scope:
		scope.defer(lambda ref: order.append("first"))
		scope.defer(lambda ref: order.append("second"))
		scope.defer(lambda ref: order.append(ref.value), v="third")
		assert order == []
	assert order == ["third", "second", "first"]


def test_guard_state_is_mutated_by_field():
	seen = []
	with DeferScope() as scope:
		cell = scope.defer(lambda ref: seen.append(ref.value._asdict()), v1=[], v2=0)
		cell.state.v1.append("hello")
		cell.state.v2 += 1
	assert seen == [{"v1": ["hello"], "v2": 1}]


def test_failing_finalizer_does_not_stop_earlier_cells():
	order = []

	def boom(ref):
		order.append("boom")
		raise RuntimeError("late finalizer failed")

	with pytest.raises(RuntimeError, match="late finalizer failed"):
		with DeferScope() as scope:
			scope.defer(lambda ref: order.append("early"))
			scope.defer(boom)
	assert order == ["boom", "early"]


def test_pop_all_moves_obligations():
	order = []
	with DeferScope() as scope:
		scope.defer(lambda ref: order.append("moved"))
		moved = scope.pop_all()
	assert order == []
	moved.close()
	assert order == ["moved"]


def test_deferring_runs_after_return_value_is_computed():
	log = []

	@deferring
	def work(items, defer):
		defer(lambda ref: log.append(list(ref.value)), items=items)
		items.append("done")
		return len(items)

	assert work(["a"]) == 2
	assert log == [["a", "done"]]
	assert work.__name__ == "work"
