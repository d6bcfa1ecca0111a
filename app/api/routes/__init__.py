"""Route modules exposed by the API package."""

from . import ping, reconciliation, tickets

__all__ = ["ping", "reconciliation", "tickets"]
