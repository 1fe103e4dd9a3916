"""Shared API dependencies: single import point for all routers.

Re-exports the database session, authentication and payment adapter
dependencies so that router modules can import everything they need from
one place::

    from paybridge.api.deps import get_db, get_current_active_user, get_payment_adapter
"""

from paybridge.auth.dependencies import get_current_active_user, get_current_user
from paybridge.billing.service import get_payment_adapter
from paybridge.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "get_payment_adapter",
]
