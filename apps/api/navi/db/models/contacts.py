"""Contact model backing the default audience resolver."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Index, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from navi.db.base import Base
from navi.db.types import JSONType


class Contact(Base):
    """
    A tenant's lead or customer.

    Owned by the CRM side of the platform; the engine only reads it,
    except for the unsubscribe flag set from public unsubscribe links.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index("idx_contacts_user", "user_id"),
        Index("idx_contacts_user_email", "user_id", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    is_unsubscribed: Mapped[bool] = mapped_column(
        Boolean, server_default=text("false"), default=False, nullable=False
    )
    unsubscribed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def first_name(self) -> str:
        return (self.name or "").split(" ", 1)[0]
