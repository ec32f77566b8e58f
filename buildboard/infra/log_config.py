from __future__ import annotations

import logging
import os

from buildboard.infra.tenant import request_context

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s org=%(organization_id)s user=%(user_id)s: %(message)s"


class RequestContextFilter(logging.Filter):
    """Stamps every record with the organization and user of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in request_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if any(isinstance(item, RequestContextFilter) for handler in root.handlers for item in handler.filters):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)
    root.setLevel((level or LOG_LEVEL).upper())
