import logging
import traceback
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_billing.models.error_log import ErrorLog

logger = logging.getLogger(__name__)


def log_error(
    db: Session,
    *,
    description: Optional[str] = None,
    error_source: str = "backend",
    endpoint: Optional[str] = None,
    module: Optional[str] = None,
    function: Optional[str] = None,
    http_status: Optional[int] = None,
    clinic_id: Optional[int] = None,
    request_payload: Optional[Dict[str, Any]] = None,
    stack_trace: Optional[str] = None,
) -> None:
    """
    Persist an error row in its own short session on the same bind, so the
    row survives the rollback of the failing transaction.
    Never raises.
    """
    sess = Session(bind=db.get_bind())
    try:
        sess.add(
            ErrorLog(
                error_source=error_source,
                description=(description or "")[:1000] or None,
                endpoint=endpoint,
                module=module,
                function=function,
                http_status=http_status,
                clinic_id=clinic_id,
                request_payload=request_payload,
                stack_trace=stack_trace,
            ))
        sess.commit()
    except SQLAlchemyError:
        # last resort – never raise from logger
        sess.rollback()
        logger.exception("Failed to persist error log: %s", description)
    finally:
        sess.close()


def format_exception(exc: BaseException) -> str:
    return "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__))
