"""
HTTP API for the admission, token and notification service.

This package provides a single FastAPI application that exposes:
- Quota-guarded reservation creation and status changes
- The live dashboard event stream
- Password reset and public cancellation by signed token
- Notification preferences and push subscriptions
"""

from api.main import app

__all__ = ["app"]
