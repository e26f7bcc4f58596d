import ast

import pytest

from drop_cell.errors import DeferSyntaxError
from drop_cell.parser import parse_bindings, parse_defer


def test_single_implicit_binding():
	block = parse_defer("v => v.append('world')")
	assert block.names == ["v"]
	assert not block.bindings[0].explicit
	assert isinstance(block.bindings[0].expr, ast.Name)
	assert ast.unparse(block.body[0]) == "v.append('world')"


def test_bindings_keep_order_and_sources():
	block = parse_defer("v1, v2 @ foo, v3 @ [] => print(v1, v2, v3)")
	assert block.names == ["v1", "v2", "v3"]
	assert [b.source for b in block.bindings] == [None, "foo", "[]"]
	assert isinstance(block.bindings[2].expr, ast.List)


def test_parenthesized_binding_list():
	block = parse_defer("(a, b @ pair[0]) => pass")
	assert block.names == ["a", "b"]
	assert block.bindings[1].source == "pair[0]"


def test_source_expression_may_contain_commas_and_arrows_in_brackets():
	block = parse_defer("v @ f(a, b), w @ {'k': 1} => pass")
	assert [b.source for b in block.bindings] == ["f(a, b)", "{'k': 1}"]
	block = parse_defer("v @ x if c else y => pass")
	assert ast.unparse(block.bindings[0].expr) == "x if c else y"


def test_separator_inside_string_is_not_a_separator():
	block = parse_defer("v @ '=>' => print(v)")
	assert block.bindings[0].source == "'=>'"
	block = parse_defer("print('=>')")
	assert block.arity == 0


@pytest.mark.parametrize(
	"source",
	[
		"print('world')",
		"a, b = pair()",
		"x @ y",
		"q.put(1); q.put(2)",
		"v",
	],
)
def test_bodies_without_separator_have_no_bindings(source: str):
	block = parse_defer(source)
	assert block.arity == 0
	assert block.body


def test_multiline_body_is_dedented():
	block = parse_defer(
		"""v =>
		if v:
			v.append(1)
		v.append(2)
	"""
	)
	assert [type(s) for s in block.body] == [ast.If, ast.Expr]


def test_compound_statement_can_start_on_separator_line():
	block = parse_defer("v => for x in v:\n    print(x)")
	assert isinstance(block.body[0], ast.For)


def test_missing_binding_after_comma():
	with pytest.raises(DeferSyntaxError, match="expected a binding name"):
		parse_defer("v1, => pass")


def test_missing_separator_after_binding_list():
	with pytest.raises(DeferSyntaxError, match="expected '=>' after the binding list") as info:
		parse_defer("a, b c()")
	assert info.value.span.line == 1


def test_empty_source_expression():
	with pytest.raises(DeferSyntaxError, match="malformed binding list"):
		parse_defer("v @ => pass")


def test_invalid_source_expression():
	with pytest.raises(DeferSyntaxError, match="invalid source expression for 'v'"):
		parse_defer("v @ 1 + => pass")


@pytest.mark.parametrize(
	("source", "message"),
	[
		("class => pass", "keyword 'class'"),
		("_defer_ref => pass", "reserved prefix"),
		("a, a @ b => pass", "duplicate binding 'a'"),
	],
)
def test_bad_binding_names(source: str, message: str):
	with pytest.raises(DeferSyntaxError, match=message):
		parse_defer(source)


def test_invalid_body_reports_body_position():
	with pytest.raises(DeferSyntaxError, match="invalid defer body") as info:
		parse_defer("v =>\n    x = (")
	assert info.value.span.line is not None
	assert info.value.span.line >= 2


def test_body_cannot_suspend():
	with pytest.raises(DeferSyntaxError, match="cannot yield"):
		parse_defer("v => yield v")
	with pytest.raises(DeferSyntaxError, match="cannot await"):
		parse_defer("v => await v.aclose()")
	# Nested functions may do whatever they like.
	parse_defer("v =>\n    def g():\n        yield v")


def test_parse_bindings():
	assert parse_bindings("") == []
	bindings = parse_bindings("conn, log @ []")
	assert [b.name for b in bindings] == ["conn", "log"]
	with pytest.raises(DeferSyntaxError, match="expected a binding name, found end of input"):
		parse_bindings("conn,")


def test_compound_body_on_separator_line_keeps_its_clauses():
	block = parse_defer("v => if v:\n    v.append(1)\nelse:\n    v.append(2)")
	assert isinstance(block.body[0], ast.If)
	assert len(block.body[0].orelse) == 1

	block = parse_defer("v => try:\nv.close()\nexcept OSError:\npass\nfinally:\nv.clear()")
	stmt = block.body[0]
	assert isinstance(stmt, ast.Try)
	assert len(stmt.body) == 1 and len(stmt.handlers) == 1 and len(stmt.finalbody) == 1


def test_parenthesized_header_reports_binding_list_errors():
	with pytest.raises(DeferSyntaxError, match="malformed binding list"):
		parse_defer("(a, b c) => pass")
	# A parenthesized tuple assignment is still an ordinary body.
	assert parse_defer("(a, b) = pair()").arity == 0
