"""Observability bootstrap: structured logs, request middleware and build info."""

from __future__ import annotations

from fastapi import FastAPI

from heartline.obs import logging as obs_logging
from heartline.obs import metrics, middleware
from heartline.settings import settings

_initialised = False


def init(app: FastAPI) -> None:
	global _initialised
	if _initialised or not settings.obs_enabled:
		return
	logger = obs_logging.configure_logging()
	middleware.install(app)
	metrics.set_build_info(settings.service_name, settings.git_commit)
	logger.info("Observability ready (log level %s)", settings.obs_log_level)
	_initialised = True


__all__ = ["init"]
