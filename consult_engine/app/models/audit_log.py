"""
Audit Log Database Model.

Every money movement and lifecycle change writes a row here inside the
same transaction, so the audit trail can never disagree with the ledger.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from consult_engine.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - SESSION_CREATED / SESSION_ACTIVATED / SESSION_ENDED
    - AUTO_DEDUCTION
    - SESSION_SETTLED / APPOINTMENT_SETTLED
    - SUBSCRIPTION_EXPIRED / SUBSCRIPTION_ROLLED_OVER
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_role = Column(String(50), nullable=True)

    action = Column(String(100), nullable=False, index=True)

    # What the action touched, e.g. ("text_session", 42)
    target_type = Column(String(50), nullable=True, index=True)
    target_id = Column(Integer, index=True, nullable=True)

    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', target={self.target_type}:{self.target_id})>"
