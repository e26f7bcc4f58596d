# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
structlog setup for `drop-cell` runs.

Library modules only call `logging.getLogger(__name__)`; records reach stderr
through a structlog `ProcessorFormatter`, rendered for humans by default or
as JSON lines with `--log-json`.
"""

from __future__ import annotations

import logging
import sys

import structlog

_PACKAGE_LOGGER = "drop_cell"


def _renderer(log_json: bool) -> structlog.types.Processor:
	if log_json:
		return structlog.processors.JSONRenderer()
	return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(*, verbose: bool = False, log_json: bool = False) -> None:
	"""Route `drop_cell` log records to stderr (DEBUG with `verbose`, else WARNING)."""
	pre_chain: list[structlog.types.Processor] = [
		structlog.stdlib.add_log_level,
		structlog.stdlib.add_logger_name,
		structlog.processors.TimeStamper(fmt="iso"),
	]
	structlog.configure(
		processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
		logger_factory=structlog.stdlib.LoggerFactory(),
		wrapper_class=structlog.stdlib.BoundLogger,
		cache_logger_on_first_use=False,
	)

	handler = logging.StreamHandler(sys.stderr)
	handler.setFormatter(
		structlog.stdlib.ProcessorFormatter(
			foreign_pre_chain=pre_chain,
			processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, _renderer(log_json)],
		)
	)

	package_logger = logging.getLogger(_PACKAGE_LOGGER)
	package_logger.handlers[:] = [handler]
	package_logger.propagate = False
	package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


__all__ = ["configure_logging"]
