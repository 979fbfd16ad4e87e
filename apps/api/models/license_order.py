"""LicenseOrder model for purchased licence codes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class LicenseOrder(Base):
    """Purchase record for a licence code, from payment through activation."""

    __tablename__ = "license_orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String, nullable=False)
    code = Column(String, nullable=False, unique=True, index=True)
    platform = Column(String, nullable=False)
    account_number = Column(String, nullable=False)
    plan_days = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False, default=0)
    points_used = Column(Integer, nullable=False, default=0)
    source = Column(String, nullable=False, default="money")  # money, credits, admin
    status = Column(String, nullable=False, default="pending_payment", index=True)
    expires_at = Column(String, nullable=False)  # Buddhist Era "DD/MM/YYYY HH:mm"
    paid_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="license_orders")
