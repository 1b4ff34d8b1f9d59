"""
pydrel.settings
===============
Module-level configuration. Each value can be overridden through the
environment variable named next to it; the variable is read once, at
import time.
"""

import os
from typing import Final

ENV_SHOW_WARNINGS: Final[str] = "PYDREL_SHOW_WARNINGS"
ENV_FETCH_TIMEOUT: Final[str] = "PYDREL_FETCH_TIMEOUT"

SHOW_WARNINGS: bool = os.getenv(ENV_SHOW_WARNINGS, "1").strip().lower() not in (
    "0",
    "false",
    "no",
    "off",
)
"""Log misconfigured relations (via ``logger.warning``) instead of staying quiet."""

DEFAULT_FETCH_TIMEOUT: float = float(os.getenv(ENV_FETCH_TIMEOUT, "15.0"))
"""Timeout in seconds for :class:`pydrel.fetch.HttpFetcher` requests."""

DEFAULT_ID_ATTRIBUTE: Final[str] = "id"
DEFAULT_SUB_MODEL_TYPE_ATTRIBUTE: Final[str] = "type"
