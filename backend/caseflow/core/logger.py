# caseflow/core/logger.py
"""
Shared application logger.

Modules either import ``logger`` from here or take a module logger with
``logging.getLogger(__name__)``; both end up under the same root handler.
"""
import logging
import sys

from caseflow.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _configure_root() -> None:
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)

    # boto is chatty at DEBUG
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))
    logging.getLogger("boto3").setLevel(max(level, logging.INFO))


_configure_root()

logger = logging.getLogger("caseflow")
