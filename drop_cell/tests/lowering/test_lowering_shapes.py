import ast

import pytest

from drop_cell.lowering import lower_defer


def _anchor() -> ast.stmt:
	return ast.parse("pass").body[0]


def _expr(text: str) -> ast.expr:
	return ast.parse(text, mode="eval").body


def test_zero_bindings():
	lowered = lower_defer([], [], [ast.parse("q.put(1)").body[0]], index=0, anchor=_anchor())
	assert ast.unparse(lowered.finalizer) == "def _defer_fn_0(_defer_unit):\n    q.put(1)"
	assert lowered.aliases == {}
	scope = lowered.scope([], _anchor())
	assert ast.unparse(scope) == "with _defer_DropCell(None, _defer_fn_0) as _defer_cell_0:\n    pass"


def test_single_binding():
	lowered = lower_defer(["v"], [_expr("v")], [ast.parse("v.append(1)").body[0]], index=2, anchor=_anchor())
	assert ast.unparse(lowered.finalizer) == (
		"def _defer_fn_2(_defer_ref):\n    v = _defer_ref.value\n    v.append(1)"
	)
	assert ast.unparse(lowered.aliases["v"](ast.Load())) == "_defer_ref_2.value"
	rest = [ast.parse("return 1").body[0]]
	assert ast.unparse(lowered.scope(rest, _anchor())) == (
		"with _defer_DropCell(v, _defer_fn_2) as _defer_cell_2:\n"
		"    _defer_ref_2 = _defer_cell_2.state_mut()\n"
		"    return 1"
	)


def test_many_bindings():
	lowered = lower_defer(
		["v1", "v2", "v3"],
		[_expr("v1"), _expr("foo"), _expr("[]")],
		[ast.Pass()],
		index=1,
		anchor=_anchor(),
	)
	assert ast.unparse(lowered.capture) == "_defer_Captures(('v1', 'v2', 'v3'), (v1, foo, []))"
	assert "v1, v2, v3 = _defer_ref.value" in ast.unparse(lowered.finalizer)
	assert ast.unparse(lowered.aliases["v2"](ast.Store())) == "_defer_ref_1.value[1]"


def test_generated_nodes_carry_anchor_location():
	anchor = ast.parse("\n\n\nx").body[0]
	lowered = lower_defer(["v"], [_expr("v")], [], index=0, anchor=anchor)
	assert all(
		n.lineno == 4 for n in ast.walk(lowered.finalizer) if "lineno" in n._attributes
	)


def test_mismatched_sources():
	with pytest.raises(ValueError):
		lower_defer(["a", "b"], [_expr("a")], [], index=0, anchor=_anchor())
