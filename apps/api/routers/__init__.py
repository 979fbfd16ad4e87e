"""Routers package."""

from . import (
    health,
    licenses,
    billing,
    plans,
    admin,
)
