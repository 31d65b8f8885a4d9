# clinic_billing/core/logging.py
from __future__ import annotations

import logging

from clinic_billing.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """
    Root handler for the API process. Safe to call more than once.
    """
    lvl = (level or settings.LOG_LEVEL or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=lvl, format=LOG_FORMAT)
    root.setLevel(lvl)
    logging.getLogger("clinic_billing").setLevel(lvl)
