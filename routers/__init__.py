"""Routers package."""

from . import (
    health,
    credits,
    subscription,
    app_state,
    identity,
)
