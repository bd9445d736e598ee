"""Placeholder rendering for outbound message content."""

from __future__ import annotations

from dataclasses import dataclass

from navi.db.models import Contact


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    body: str


def contact_variables(contact: Contact) -> dict[str, str]:
    """Variables available to message templates."""
    name = (contact.name or "").strip()
    return {
        "first_name": name.split()[0] if name else "",
        "full_name": name,
        "email": contact.email or "",
        "phone": contact.phone or "",
    }


def render_text(text: str, variables: dict[str, str]) -> str:
    for key, value in variables.items():
        text = text.replace("{{" + key + "}}", value or "")
    return text


def render_for_contact(subject: str, body: str, contact: Contact) -> RenderedContent:
    """Substitute {{first_name}}, {{full_name}}, {{email}}, {{phone}}."""
    variables = contact_variables(contact)
    return RenderedContent(
        subject=render_text(subject or "", variables),
        body=render_text(body or "", variables),
    )
