from __future__ import annotations

import logging
import logging.config
import re
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

_DEBUG_LOG = False
_FILENAME_PARAM_RE = re.compile(r"(?<=[?&]filename=)([0-9A-Fa-f]{8})[0-9A-Fa-f]+")


def _decode_path(value: str) -> str:
    try:
        return unquote(value, encoding="utf-8", errors="replace")
    except Exception:
        return value


def mask_filename_hash(path: str) -> str:
    """Shorten the ``filename`` hash in a request path to its first 8 hex digits."""
    return _FILENAME_PARAM_RE.sub(r"\1…", path)


class MaskedAccessFormatter(UvicornAccessFormatter):
    """Uvicorn access formatter that decodes paths and masks filename hashes."""

    def formatMessage(self, record):  # type: ignore[override]
        try:
            client_addr, method, full_path, http_version, status_code = record.args
        except Exception:
            return super().formatMessage(record)
        if isinstance(full_path, str):
            full_path = mask_filename_hash(_decode_path(full_path))
        new_record = copy(record)
        new_record.args = (client_addr, method, full_path, http_version, status_code)
        return super().formatMessage(new_record)


def build_uvicorn_log_config(*, debug: bool = False) -> dict[str, Any]:
    """
    Return a uvicorn logging config that masks access paths and also routes
    the ``bmk`` loggers through uvicorn's default handler.
    """
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "bmk.logging_utils.MaskedAccessFormatter"
    config.setdefault("loggers", {})["bmk"] = {
        "handlers": ["default"],
        "level": "DEBUG" if debug else "INFO",
        "propagate": False,
    }
    return config


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled
    logging.getLogger("bmk").setLevel(logging.DEBUG if enabled else logging.INFO)


def debug_logging_enabled() -> bool:
    return _DEBUG_LOG


def configure_logging() -> None:
    """Apply the uvicorn-style config outside of a running server (e.g. one-shot builds)."""
    logging.config.dictConfig(build_uvicorn_log_config(debug=_DEBUG_LOG))


__all__ = [
    "MaskedAccessFormatter",
    "build_uvicorn_log_config",
    "configure_logging",
    "debug_logging_enabled",
    "mask_filename_hash",
    "set_debug_logging",
]
