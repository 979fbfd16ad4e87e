"""TopUpRequest model for credit purchases awaiting approval."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TopUpRequest(Base):
    """Money-to-credit conversion request (1 money unit = 1 credit)."""

    __tablename__ = "topup_requests"
    __table_args__ = (
        Index(
            "uq_topup_requests_pending_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    points = Column(Integer, nullable=False)
    payment_method = Column(String, nullable=False)
    payment_proof = Column(String, nullable=True)
    transaction_ref = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, approved, rejected
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="topup_requests")
