"""Contact/audience resolution.

The engine and scheduler talk to contacts only through a ContactResolver so
another contact store can be injected without touching the jobs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from navi.db.enums import Channel
from navi.db.models import Contact


def address_for_channel(contact: Contact, channel: Channel | str) -> str | None:
    """Email for email sends, phone for SMS; None when the contact lacks it."""
    channel = Channel(channel)
    value = contact.email if channel == Channel.EMAIL else contact.phone
    value = (value or "").strip()
    return value or None


def matches_tags(contact_tags: list[str] | None, tags: list[str]) -> bool:
    """OR filter: any shared tag matches; an empty filter matches everyone."""
    if not tags:
        return True
    return bool(set(contact_tags or []) & set(tags))


class ContactResolver(ABC):
    """Read access to a tenant's contacts."""

    @abstractmethod
    def resolve_audience(
        self, user_id: UUID, tags: list[str], channel: Channel | str
    ) -> list[Contact]:
        """Subscribed contacts matching any tag that are reachable on channel."""

    @abstractmethod
    def is_unsubscribed(self, contact_id: UUID) -> bool:
        """Current unsubscribe state, read fresh (never cached)."""

    @abstractmethod
    def get_contact(self, contact_id: UUID) -> Contact | None:
        """Fetch a contact, or None if it no longer exists."""


class DbContactResolver(ContactResolver):
    """ContactResolver backed by the contacts table."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_audience(
        self, user_id: UUID, tags: list[str], channel: Channel | str
    ) -> list[Contact]:
        contacts = (
            self.db.execute(
                select(Contact)
                .where(
                    Contact.user_id == user_id,
                    Contact.is_unsubscribed.is_(False),
                )
                .order_by(Contact.created_at, Contact.id)
            )
            .scalars()
            .all()
        )
        # Tags live in a JSON column; filter here to stay portable across backends
        return [
            c
            for c in contacts
            if matches_tags(c.tags, tags) and address_for_channel(c, channel)
        ]

    def is_unsubscribed(self, contact_id: UUID) -> bool:
        value = self.db.execute(
            select(Contact.is_unsubscribed).where(Contact.id == contact_id)
        ).scalar_one_or_none()
        # A deleted contact can no longer be messaged
        return True if value is None else bool(value)

    def get_contact(self, contact_id: UUID) -> Contact | None:
        return self.db.get(Contact, contact_id)


def unsubscribe_contact(db: Session, contact_id: UUID) -> bool:
    """Flag a contact as unsubscribed. Returns False if already unsubscribed."""
    result = db.execute(
        update(Contact)
        .where(Contact.id == contact_id, Contact.is_unsubscribed.is_(False))
        .values(is_unsubscribed=True, unsubscribed_at=datetime.now(timezone.utc))
    )
    db.commit()
    return result.rowcount == 1
