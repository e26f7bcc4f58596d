import queue

import pytest

from drop_cell import DeferSyntaxError, defer, defers

foo = ["foo"]


@defers
def send_after(q: queue.Queue) -> None:
	defer(
		"""
		q.put("first")
		q.put("second")
		"""
	)
	q.put("outside")


def test_zero_binding_block_runs_at_scope_exit():
	q: queue.Queue = queue.Queue()
	send_after(q)
	assert [q.get_nowait() for _ in range(3)] == ["outside", "first", "second"]
	assert q.empty()


@defers
def push_world(early: bool, seen: list) -> list:
	v = []
	defer("v => v.append('world'); seen.append(list(v)); assert v == ['hello', 'world']")
	v.append("hello")
	if early:
		return v
	raise AssertionError("unreachable")


def test_single_binding_with_early_return():
	seen: list = []
	result = push_world(True, seen)
	assert seen == [["hello", "world"]]
	# Same object: the caller observes the finalizer's push too.
	assert result == ["hello", "world"]


@defers
def rename(seen: list) -> None:
	v2 = "local v2"
	defer("v1 @ [], v2 @ foo, v3 @ [] => seen.append((v1, v2 is foo, v3))")
	v1.append(1)
	v3 = ["rebound"]
	assert v2 == ["foo"]


def test_rename_binds_the_source_expression():
	seen: list = []
	rename(seen)
	assert seen == [([1], True, ["rebound"])]


@defers
def counters(seen: list) -> int:
	n = 0
	with defer("n, total @ 0"):
		seen.append((n, total))
	n += 5
	total = n * 2
	return total


def test_finalizer_sees_final_values():
	seen: list = []
	assert counters(seen) == 10
	assert seen == [(5, 10)]


@defers
def three(seen: list) -> None:
	a, b, c = 1, 2, 3
	defer("a, b, c => seen.append(a + b + c)")
	a, b, c = c, b, a * 10


def test_three_bindings():
	seen: list = []
	three(seen)
	assert seen == [3 + 2 + 10]


@defers
def ordered(order: list) -> None:
	defer(order.append(1))
	with defer:
		order.append(2)
	defer("x @ 3 => order.append(x)")
	order.append(0)


def test_multiple_blocks_run_in_reverse_order():
	order: list = []
	ordered(order)
	assert order == [0, 3, 2, 1]


@defers
def failing(order: list) -> None:
	defer("order.append('cleanup')")
	order.append("work")
	raise KeyError("boom")


def test_finalizer_runs_while_exception_propagates():
	order: list = []
	with pytest.raises(KeyError):
		failing(order)
	assert order == ["work", "cleanup"]


@defers
def finalizer_fails(order: list) -> None:
	defer("order.append('early')")
	defer("order.append('late'); 1 / 0")
	order.append("body")


def test_failing_finalizer_does_not_skip_others():
	order: list = []
	with pytest.raises(ZeroDivisionError):
		finalizer_fails(order)
	assert order == ["body", "late", "early"]


@defers
def bad_capture(order: list) -> None:
	defer("order.append('registered')")
	defer("v @ 1 // 0 => order.append('never')")
	order.append("unreachable")


def test_capture_evaluation_failure_creates_no_obligation():
	order: list = []
	with pytest.raises(ZeroDivisionError):
		bad_capture(order)
	assert order == ["registered"]


@defers
def per_iteration(order: list) -> None:
	for i in range(3):
		defer("i => order.append(('drop', i))")
		order.append(("body", i))
		if i == 1:
			continue
	order.append("after")


def test_block_scope_ends_each_iteration():
	order: list = []
	per_iteration(order)
	assert order == [
		("body", 0),
		("drop", 0),
		("body", 1),
		("drop", 1),
		("body", 2),
		("drop", 2),
		"after",
	]


def test_closures_and_comprehensions_see_aliases():
	seen: list = []
	offset = 100

	@defers
	def work(items):
		defer("count @ [0] => seen.append((count[0], items))")

		def bump():
			count[0] += 1

		bump()
		bump()
		shifted = [x + offset for x in items]
		return sum(x for x in shifted) + count[0]

	assert work([1, 2]) == 203 + 2
	assert seen == [(2, [1, 2])]
	assert work.__name__ == "work"


@defers
def with_defaults(a, b=2, *, c=3):
	"""Docstring survives."""
	defer("a => pass")
	return a + b + c


def test_signature_and_metadata_are_kept():
	assert with_defaults(1) == 6
	assert with_defaults(1, c=10) == 13
	assert with_defaults.__doc__ == "Docstring survives."
	assert with_defaults.__wrapped__.__name__ == "with_defaults"


class Base:
	def close(self, log):
		log.append("base")


class Resource(Base):
	__tag = "resource"

	@defers
	def close(self, log):
		defer(log.append(self.__tag))
		super().close(log)


def test_methods_keep_super_and_private_names():
	log: list = []
	Resource().close(log)
	assert log == ["base", "resource"]


@defers
def numbers(log: list):
	defer("log.append('closed')")
	yield 1
	yield 2


def test_generator_cell_drops_on_close():
	log: list = []
	gen = numbers(log)
	assert next(gen) == 1
	assert log == []
	gen.close()
	assert log == ["closed"]


def test_function_without_defer_is_returned_as_is():
	def plain():
		return 1

	assert defers(plain) is plain


def test_defer_outside_decorated_function():
	with pytest.raises(DeferSyntaxError, match="outside a function decorated with @defers"):
		defer("print('x')")
	with pytest.raises(DeferSyntaxError):
		with defer:
			pass


def test_enclosing_names_used_only_inside_defer_strings():
	seen: list = []
	base = [1, 2]

	@defers
	def work():
		defer("items @ list(base) => seen.append(items)")
		items.append(3)

	work()
	assert seen == [[1, 2, 3]]
	assert base == [1, 2]


def test_enclosing_name_assigned_after_decoration_is_an_error():
	with pytest.raises(DeferSyntaxError, match="'late' is used in a defer block but is not assigned"):

		@defers
		def work():
			defer("late.append(1)")

	late: list = []
	assert late == []


def test_nested_function_locals_are_not_aliases():
	seen: list = []

	@defers
	def shadow():
		v = ["outer"]
		defer("v => seen.append(list(v))")

		def helper():
			v = ["helper-local"]
			return v

		inner = helper()
		return v, inner

	result, inner = shadow()
	assert result == ["outer"]
	assert inner == ["helper-local"]
	assert seen == [["outer"]]


def test_class_body_locals_are_not_aliases():
	seen: list = []

	@defers
	def build():
		v = 1
		defer("v => seen.append(v)")

		class Box:
			v = "class attr"

			def get(self):
				return v

		v += 1
		return Box.v, Box().get()

	assert build() == ("class attr", 2)
	assert seen == [2]
