# API Routes Module
from app.api.routes import (
    admin,
    subscriptions,
    usage,
    webhooks,
)

__all__ = [
    "admin",
    "subscriptions",
    "usage",
    "webhooks",
]
