"""User (customer account) model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Customer account holding the credit balance."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=True, index=True)
    credit_balance = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="user", cascade="all, delete-orphan")
    license_orders = relationship("LicenseOrder", back_populates="user")
    license_accounts = relationship("LicenseAccount", back_populates="user")
    extension_requests = relationship("ExtensionRequest", back_populates="user")
    topup_requests = relationship("TopUpRequest", back_populates="user")
