"""Observability package bootstrap."""

from __future__ import annotations

from fastapi import FastAPI

from matchfeed.obs import logging as obs_logging
from matchfeed.obs import middleware
from matchfeed.settings import settings

_logging_configured = False


def init(app: FastAPI) -> None:
	"""Configure logging once per process and instrument ``app``."""
	global _logging_configured
	if not settings.obs_enabled:
		return
	if not _logging_configured:
		obs_logging.configure_logging()
		_logging_configured = True
	middleware.install(app)


__all__ = ["init"]
