"""
Binding-list parser for defer blocks.

`parse_defer` reads the inline form (`"v1, v2 @ expr => body"`, or a plain
body); `parse_bindings` reads the header of a `with defer("..."):` block.
Both return Python `ast` nodes for source expressions and bodies and raise
`DeferSyntaxError` with spans relative to the parsed text.
"""

from __future__ import annotations

from .ast import Binding, DeferBlock, Located
from .parser import RESERVED_PREFIX, parse_bindings, parse_defer

__all__ = ["Binding", "DeferBlock", "Located", "RESERVED_PREFIX", "parse_bindings", "parse_defer"]
