"""Routers package."""

from . import (
    health,
    credits,
    allocations,
    reports,
    dashboard,
    directory,
)
