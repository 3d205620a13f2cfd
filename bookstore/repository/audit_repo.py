from sqlalchemy.orm import Session
from bookstore.models.order import AdminAuditLog
from bookstore.utils.clock import utcnow
from typing import List


class AuditRepository:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def record(self, admin_id, action: str, entity_type: str, entity_id, details: dict = None) -> AdminAuditLog:
        entry = AdminAuditLog(
            admin_id=admin_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            created_at=self.clock(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_for(self, entity_type: str, entity_id) -> List[AdminAuditLog]:
        return (
            self.db.query(AdminAuditLog)
            .filter(AdminAuditLog.entity_type == entity_type, AdminAuditLog.entity_id == entity_id)
            .order_by(AdminAuditLog.created_at)
            .all()
        )
