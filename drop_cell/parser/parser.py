# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Binding-list parser for defer blocks.

The input is `[binding-list "=>"] body`. Nothing marks whether a block starts
with a binding list, and a Python body may itself start with something that
looks like a binding (`x @ y`, `a, b = pair()`). So the header is parsed
speculatively with lark's interactive LALR parser, one token at a time:

- reaching a top-level `=>` commits to the binding-list reading; from then on
  every problem is a grammar error (no backtracking);
- failing anywhere before that means the whole input, including whatever
  looked like a binding, is an ordinary zero-binding body.

Source expressions after `@` are kept as balanced token runs by the grammar
and handed to Python's parser; so is the body.
"""

from __future__ import annotations

import ast
import keyword
import re
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedCharacters, UnexpectedInput, UnexpectedToken

from drop_cell.core.span import Span
from drop_cell.errors import DeferSyntaxError

from .ast import Binding, DeferBlock, Located

_GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")
_GRAMMAR_SRC = _GRAMMAR_PATH.read_text()

RESERVED_PREFIX = "_defer_"

_HEAD_PARSER = Lark(
	_GRAMMAR_SRC,
	parser="lalr",
	lexer="basic",
	start=["defer_head", "binding_list"],
	propagate_positions=True,
	maybe_placeholders=False,
	keep_all_tokens=True,
)

_CONTINUATION = re.compile(r"(?:else|elif|except|finally)\b")
_OPENERS = {"LPAR", "LSQB", "LBRACE"}
_CLOSERS = {"RPAR", "RSQB", "RBRACE"}


@dataclass
class _Speculation:
	"""Outcome of the speculative header parse."""

	tree: Optional[Tree] = None
	error: Optional[UnexpectedInput] = None
	# A top-level ',' was consumed, i.e. at least one binding was complete
	# before the failure. Used only to pick the better error message.
	listed: bool = False


def parse_defer(source: str) -> DeferBlock:
	"""
	Parse an inline defer block (`"v1, v2 @ expr => body"` or just `"body"`).

	Raises DeferSyntaxError with a span relative to `source`.
	"""
	guess = _speculate(source)
	if guess.tree is not None:
		head = guess.tree
		list_node = next(c for c in head.children if isinstance(c, Tree) and c.data == "binding_list")
		arrow = head.children[-1]
		bindings = _build_bindings(list_node, source)
		body_text = source[arrow.end_pos :]
		body_loc = Located(arrow.end_line, arrow.end_column)
		body = _parse_body(body_text, body_loc)
		return DeferBlock(
			bindings=bindings,
			body=body,
			loc=Located(head.meta.line, head.meta.column),
			body_loc=body_loc,
			body_source=body_text,
		)
	try:
		body = _parse_body(source, Located(1, 1))
	except DeferSyntaxError:
		if guess.listed and guess.error is not None:
			raise DeferSyntaxError(
				f"malformed binding list: {_describe(guess.error)}",
				span=_error_span(guess.error),
			) from None
		raise
	return DeferBlock(bindings=[], body=body, body_source=source)


def parse_bindings(source: str) -> List[Binding]:
	"""Parse a bare binding list, as written in a `with defer("..."):` header."""
	if not source.strip():
		return []
	try:
		tree = _HEAD_PARSER.parse(source, start="binding_list")
	except UnexpectedInput as err:
		raise DeferSyntaxError(f"malformed binding list: {_describe(err)}", span=_error_span(err)) from None
	return _build_bindings(tree, source)


def _speculate(source: str) -> _Speculation:
	parser = _HEAD_PARSER.parse_interactive(source, start="defer_head")
	depth = 0
	listed = False
	# Depth at which binding separators sit: 1 inside a parenthesized header.
	list_depth: Optional[int] = None
	try:
		for tok in parser.iter_parse():
			if list_depth is None:
				list_depth = 1 if tok.type == "LPAR" else 0
			if tok.type == "ARROW" and depth == 0:
				break
			if tok.type in _OPENERS:
				depth += 1
			elif tok.type in _CLOSERS and depth:
				depth -= 1
			elif tok.type == "COMMA" and depth == list_depth:
				listed = True
		else:
			return _Speculation(listed=listed)
	except UnexpectedInput as err:
		return _Speculation(error=err, listed=listed)
	# Committed: the separator is there, so the header must accept it.
	try:
		parser.feed_token(tok)
		tree = parser.feed_eof(tok)
	except UnexpectedInput as err:
		raise DeferSyntaxError(f"malformed binding list: {_describe(err)}", span=_error_span(err)) from None
	return _Speculation(tree=tree, listed=listed)


def _build_bindings(list_node: Tree, source: str) -> List[Binding]:
	bindings: List[Binding] = []
	seen: set[str] = set()
	for node in list_node.children:
		if not isinstance(node, Tree) or node.data != "binding":
			continue
		name_tok: Token = node.children[0]
		name = str(name_tok)
		loc = Located(name_tok.line, name_tok.column)
		_check_binding_name(name, loc)
		if name in seen:
			raise DeferSyntaxError(f"duplicate binding {name!r}", span=Span.from_loc(loc))
		seen.add(name)
		expr_node = next((c for c in node.children if isinstance(c, Tree)), None)
		if expr_node is None:
			bindings.append(Binding(name=name, source=None, expr=ast.Name(id=name, ctx=ast.Load()), loc=loc))
			continue
		text = source[expr_node.meta.start_pos : expr_node.meta.end_pos]
		bindings.append(Binding(name=name, source=text, expr=_parse_source_expr(name, text, loc), loc=loc))
	return bindings


def _check_binding_name(name: str, loc: Located) -> None:
	if keyword.iskeyword(name):
		raise DeferSyntaxError(f"keyword {name!r} cannot be used as a binding name", span=Span.from_loc(loc))
	if name.startswith(RESERVED_PREFIX):
		raise DeferSyntaxError(
			f"binding name {name!r} uses the reserved prefix {RESERVED_PREFIX!r}",
			span=Span.from_loc(loc),
		)


def _parse_source_expr(name: str, text: str, loc: Located) -> ast.expr:
	# Parenthesized so a source expression may span lines.
	try:
		tree = ast.parse("(\n" + text + "\n)", mode="eval")
	except SyntaxError as err:
		raise DeferSyntaxError(
			f"invalid source expression for {name!r}: {err.msg}",
			span=Span.from_loc(loc),
		) from None
	return tree.body


def _normalize_body(text: str) -> str:
	"""
	Dedent a body that may start on the separator's line.

	Line 1 of the result is always line 1 of `text` so positions stay aligned.
	"""
	first, sep, rest = text.partition("\n")
	first = first.strip()
	if not sep:
		return first
	rest = textwrap.dedent(rest)
	lines = rest.split("\n")
	lead = next((line for line in lines if line.strip()), "")
	if first.endswith(":") and lead and not lead[0].isspace():
		# The suite of the first clause was written flush left; its own
		# continuation clauses (else, except, ...) stay at the header's level.
		rest = "\n".join(
			line if not line.strip() or _CONTINUATION.match(line) else "    " + line for line in lines
		)
	return first + "\n" + rest


def _parse_body(text: str, start: Located) -> List[ast.stmt]:
	try:
		module = ast.parse(_normalize_body(text))
	except SyntaxError as err:
		line = start.line + (err.lineno or 1) - 1
		column = err.offset if (err.lineno or 1) > 1 else start.column + (err.offset or 1) - 1
		raise DeferSyntaxError(
			f"invalid defer body: {err.msg}",
			span=Span(line=line, column=column),
		) from None
	_check_body(module.body, start)
	return module.body or [ast.Pass()]


class _SuspendFinder(ast.NodeVisitor):
	def __init__(self) -> None:
		self.found: ast.AST | None = None

	def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
		return None

	visit_AsyncFunctionDef = visit_FunctionDef
	visit_Lambda = visit_FunctionDef
	visit_ClassDef = visit_FunctionDef

	def generic_visit(self, node: ast.AST) -> None:
		if self.found is None and isinstance(node, (ast.Yield, ast.YieldFrom, ast.Await)):
			self.found = node
			return
		super().generic_visit(node)


def _check_body(body: List[ast.stmt], start: Located) -> None:
	finder = _SuspendFinder()
	for stmt in body:
		finder.visit(stmt)
	if finder.found is not None:
		kind = "await" if isinstance(finder.found, ast.Await) else "yield"
		line = start.line + finder.found.lineno - 1
		raise DeferSyntaxError(f"defer body cannot {kind}; finalizers run synchronously", span=Span(line=line))


def _describe(err: UnexpectedInput) -> str:
	if isinstance(err, UnexpectedToken):
		tok = err.token
		expected = set(err.expected or ())
		found = "end of input" if tok.type == "$END" else repr(str(tok))
		if expected == {"NAME"}:
			return f"expected a binding name, found {found}"
		if "ARROW" in expected and "NAME" not in expected:
			return f"expected '=>' after the binding list, found {found}"
		return f"unexpected {found}"
	if isinstance(err, UnexpectedCharacters):
		return f"unexpected character {err.char!r}"
	return str(err)


def _error_span(err: UnexpectedInput) -> Span:
	line = getattr(err, "line", None)
	column = getattr(err, "column", None)
	return Span(
		line=line if isinstance(line, int) and line > 0 else None,
		column=column if isinstance(column, int) and column > 0 else None,
		raw=err,
	)


__all__ = ["parse_defer", "parse_bindings", "RESERVED_PREFIX"]
