from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from clinic_billing.models.audit import AuditLog


def log_audit(
    db: Session,
    *,
    user_id: Optional[int],
    action: str,
    table_name: str,
    record_id: Any,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add one audit event to the caller's transaction.
    Not committed here: the audit row commits or rolls back with the
    ledger write it describes.
    """
    log = AuditLog(
        user_id=user_id,
        action=action,
        table_name=table_name,
        record_id=str(record_id),
        old_values=old_values,
        new_values=new_values,
    )
    db.add(log)
    return log
