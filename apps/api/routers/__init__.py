"""Routers package."""

from . import (
    health,
    downloads,
    content,
    proxy,
    cookies,
)
