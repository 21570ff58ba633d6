"""Routers package."""

from . import (
    health,
    social,
    cron,
)
