# clinic_billing/db/init_db.py
import logging
from typing import Optional

from sqlalchemy.engine import Engine

from clinic_billing.db.base import Base
from clinic_billing.db.session import engine as default_engine

# Import all models so metadata is complete for create_all()
from clinic_billing.models import audit, billing, error_log  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(bind: Optional[Engine] = None) -> None:
    eng = bind or default_engine
    Base.metadata.create_all(bind=eng)
    logger.info("Ledger tables ensured on %s", eng.url.render_as_string(hide_password=True))
