"""ExtensionRequest model for licence extension history and approvals."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ExtensionRequest(Base):
    """Pending or processed licence extension."""

    __tablename__ = "extension_requests"
    __table_args__ = (
        Index(
            "uq_extension_requests_pending_license",
            "license_code",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String, nullable=False)
    license_code = Column(String, nullable=False, index=True)
    license_source = Column(String, nullable=False)  # account, order, both
    license_account_id = Column(String, nullable=True)
    license_order_id = Column(String, nullable=True)
    current_expiry = Column(String, nullable=False)
    requested_plan = Column(String, nullable=False)
    requested_days = Column(Integer, nullable=False)
    cumulative_plan_days = Column(Integer, nullable=True)
    total_extended_days = Column(Integer, nullable=True)
    funding_mode = Column(String, nullable=False, default="admin_request")  # credits, admin_request, admin
    credits_used = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, approved, rejected
    requested_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)

    user = relationship("User", back_populates="extension_requests")
