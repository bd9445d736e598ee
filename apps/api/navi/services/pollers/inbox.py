"""Inbox poller - pulls DMs from connected social accounts (every 5 minutes)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.db.enums import JobName, MessageDirection, PollSourceType, SocialPlatform
from navi.db.models import PollCheckpoint, SocialConnection, SocialMessage
from navi.services.http_service import request_with_retries
from navi.services.polling_service import (
    PollingDispatcher,
    check_source_response,
    latest_timestamp_cursor,
    parse_platform_time,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
CONVERSATION_LIMIT = 25

# Platforms whose inbox APIs we can poll; the rest only arrive via webhooks
POLLABLE_PLATFORMS = (SocialPlatform.FACEBOOK.value, SocialPlatform.INSTAGRAM.value)


@dataclass(frozen=True)
class InboxItem:
    message_id: str
    conversation_id: str
    sender_id: str | None
    sender_name: str | None
    content: str
    sent_at: datetime | None


class InboxPoller(PollingDispatcher[SocialConnection]):
    source_type = PollSourceType.INBOX
    job_name = JobName.INBOX_POLL.value

    def __init__(self, client_factory: Callable[[], httpx.AsyncClient] | None = None):
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=20.0))

    def list_sources(self, db: Session) -> list[SocialConnection]:
        return list(
            db.execute(
                select(SocialConnection)
                .where(SocialConnection.is_active.is_(True))
                .order_by(SocialConnection.created_at)
            ).scalars().all()
        )

    async def fetch_items(
        self, source: SocialConnection, checkpoint: PollCheckpoint, now: datetime
    ) -> list[InboxItem]:
        if source.platform not in POLLABLE_PLATFORMS:
            logger.debug("Inbox polling not supported for %s", source.platform)
            return []

        since = parse_platform_time(checkpoint.last_seen_external_id)
        base = f"{GRAPH_BASE_URL}/{settings.META_GRAPH_API_VERSION}"
        token = source.access_token or ""

        items: list[InboxItem] = []
        async with self.client_factory() as client:

            async def get(url: str, params: dict) -> dict:
                response = await request_with_retries(
                    lambda: client.get(url, params={**params, "access_token": token})
                )
                check_source_response(response, source.platform)
                return response.json()

            conversations = await get(
                f"{base}/{source.platform_account_id}/conversations",
                {
                    "fields": "id,updated_time",
                    "limit": CONVERSATION_LIMIT,
                    **({"platform": "instagram"} if source.platform == SocialPlatform.INSTAGRAM.value else {}),
                },
            )
            for conversation in conversations.get("data", []):
                updated = parse_platform_time(conversation.get("updated_time"))
                if since and updated and updated < since:
                    continue
                messages = await get(
                    f"{base}/{conversation['id']}/messages",
                    {"fields": "id,from,message,created_time"},
                )
                for message in messages.get("data", []):
                    sent_at = parse_platform_time(message.get("created_time"))
                    if since and sent_at and sent_at < since:
                        continue
                    sender = message.get("from") or {}
                    items.append(
                        InboxItem(
                            message_id=message["id"],
                            conversation_id=conversation["id"],
                            sender_id=sender.get("id"),
                            sender_name=sender.get("name") or sender.get("username"),
                            content=message.get("message") or "",
                            sent_at=sent_at,
                        )
                    )

        items.sort(key=lambda item: item.sent_at or now)
        return items

    def external_id(self, item: InboxItem) -> str:
        return item.message_id

    def exists(self, db: Session, source: SocialConnection, external_id: str) -> bool:
        return db.execute(
            select(SocialMessage.id).where(
                SocialMessage.connection_id == source.id,
                SocialMessage.platform_message_id == external_id,
            )
        ).first() is not None

    def persist(self, db: Session, source: SocialConnection, item: InboxItem, now: datetime) -> None:
        from_page = item.sender_id == source.platform_account_id
        db.add(
            SocialMessage(
                user_id=source.user_id,
                connection_id=source.id,
                platform=source.platform,
                platform_message_id=item.message_id,
                platform_conversation_id=item.conversation_id,
                sender_id=item.sender_id,
                sender_name=item.sender_name,
                direction=(
                    MessageDirection.OUTBOUND.value if from_page else MessageDirection.INBOUND.value
                ),
                content=item.content,
                is_read=from_page,
                sent_at=item.sent_at or now,
            )
        )

    def cursor_after(self, items: list[InboxItem], current: str | None) -> str | None:
        return latest_timestamp_cursor([item.sent_at for item in items], current)
