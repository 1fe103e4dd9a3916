"""SQLAlchemy models for PayBridge.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from paybridge.models.customer import Customer
from paybridge.models.payment import Payment
from paybridge.models.subscription import Subscription
from paybridge.models.user import User

__all__ = [
    "Customer",
    "Payment",
    "Subscription",
    "User",
]
