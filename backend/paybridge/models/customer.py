"""Customer model: a billing vendor identity linked to one user."""

import uuid

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paybridge.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Customer(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Vendor-side customer record, keyed by (provider, provider_customer_id).

    ``is_provisional`` marks a placeholder created before the vendor assigned
    a real customer id (Polar, Lemon Squeezy). The first webhook carrying the
    real id for the same user and provider confirms the row.
    """

    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("provider", "provider_customer_id"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_provisional: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="customers")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Customer(id={self.id}, provider={self.provider}, "
            f"provider_customer_id={self.provider_customer_id})>"
        )
