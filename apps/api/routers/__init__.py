"""Routers package."""

from . import (
    health,
    billing,
    products,
    workflow,
    tech_pack,
)
