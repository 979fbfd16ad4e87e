"""PlanSetting model for the admin-managed licence catalog."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


LIFETIME_PLAN_DAYS = 999999


class PlanSetting(Base):
    """Catalog entry mapping a day count to its price and credit cost."""

    __tablename__ = "plan_settings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    days = Column(Integer, nullable=False, index=True)
    price = Column(Integer, nullable=False)
    points = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_lifetime = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
