"""LicenseAccount model for activated trading accounts."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class LicenseAccount(Base):
    """Activated licence bound to a trading account number."""

    __tablename__ = "license_accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String, nullable=False, index=True)
    code = Column(String, nullable=False, unique=True, index=True)
    platform = Column(String, nullable=False)
    account_number = Column(String, nullable=False)
    plan_days = Column(Integer, nullable=False)
    cumulative_plan_days = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="valid", index=True)  # valid, suspended, expired
    expires_at = Column(String, nullable=False)  # Buddhist Era "DD/MM/YYYY HH:mm"
    created_by = Column(String, nullable=False, default="user")  # user, admin
    extended_by = Column(String, nullable=True)
    activated_at = Column(DateTime(timezone=True), server_default=func.now())
    last_extended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="license_accounts")
