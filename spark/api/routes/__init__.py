"""API route modules."""

from . import events, health, integrations, oauth, webhooks

__all__ = [
    "events",
    "health",
    "integrations",
    "oauth",
    "webhooks",
]
