"""Polling dispatcher - one loop shared by the inbox, review and rank pollers.

For each active source: fetch items newer than the checkpoint, skip the ones
already ingested, persist the rest, commit, and only then advance the
checkpoint. A crash before the checkpoint moves just re-fetches items that
the dedup key then skips.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from navi.core.exceptions import SourceAuthError, SourceFetchError
from navi.core.structured_logging import build_log_context
from navi.db.enums import PollSourceType, SourceStatus
from navi.db.models import PollCheckpoint
from navi.services.http_service import AUTH_FAILURE_STATUSES

logger = logging.getLogger(__name__)

SourceT = TypeVar("SourceT")


@dataclass
class PollRunResult:
    sources_checked: int = 0
    items_fetched: int = 0
    items_ingested: int = 0
    duplicates: int = 0
    sources_deactivated: int = 0
    sources_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "sources_checked": self.sources_checked,
            "items_fetched": self.items_fetched,
            "items_ingested": self.items_ingested,
            "duplicates": self.duplicates,
            "sources_deactivated": self.sources_deactivated,
            "sources_failed": self.sources_failed,
            "errors": self.errors,
        }


# =============================================================================
# Checkpoints
# =============================================================================


def get_or_create_checkpoint(
    db: Session, source_type: PollSourceType, source_id: UUID
) -> PollCheckpoint:
    checkpoint = db.execute(
        select(PollCheckpoint).where(
            PollCheckpoint.source_type == source_type.value,
            PollCheckpoint.source_id == source_id,
        )
    ).scalar_one_or_none()
    if checkpoint:
        return checkpoint

    checkpoint = PollCheckpoint(source_type=source_type.value, source_id=source_id)
    db.add(checkpoint)
    try:
        db.commit()
    except IntegrityError:
        # Another poller created it first
        db.rollback()
        return db.execute(
            select(PollCheckpoint).where(
                PollCheckpoint.source_type == source_type.value,
                PollCheckpoint.source_id == source_id,
            )
        ).scalar_one()
    return checkpoint


def advance_checkpoint(
    db: Session,
    checkpoint_id: UUID,
    expected_last_seen: str | None,
    new_last_seen: str | None,
    checked_at: datetime,
) -> bool:
    """Move the cursor forward only if nobody else moved it since we read it."""
    if expected_last_seen is None:
        guard = PollCheckpoint.last_seen_external_id.is_(None)
    else:
        guard = PollCheckpoint.last_seen_external_id == expected_last_seen
    result = db.execute(
        update(PollCheckpoint)
        .where(PollCheckpoint.id == checkpoint_id, guard)
        .values(last_seen_external_id=new_last_seen, last_checked_at=checked_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


# =============================================================================
# Dispatcher
# =============================================================================


class PollingDispatcher(ABC, Generic[SourceT]):
    """
    Base class for a polled use-site.

    Subclasses say which sources to poll, how to fetch from one, how to
    identify an item, and how to store it. Sources are expected to carry
    id, is_active, status and last_error columns.
    """

    source_type: PollSourceType
    job_name: str

    @abstractmethod
    def list_sources(self, db: Session) -> list[SourceT]:
        """Active sources to poll this run."""

    @abstractmethod
    async def fetch_items(
        self, source: SourceT, checkpoint: PollCheckpoint, now: datetime
    ) -> list[Any]:
        """Items newer than the checkpoint. Raise SourceAuthError on 401/403."""

    @abstractmethod
    def external_id(self, item: Any) -> str:
        """Platform id used as the dedup key together with the source id."""

    @abstractmethod
    def exists(self, db: Session, source: SourceT, external_id: str) -> bool:
        """Whether (source, external_id) was already ingested."""

    @abstractmethod
    def persist(self, db: Session, source: SourceT, item: Any, now: datetime) -> None:
        """Add the item's row(s) to the session. The dispatcher commits."""

    def cursor_after(self, items: list[Any], current: str | None) -> str | None:
        """New checkpoint cursor; defaults to the last item's external id."""
        if not items:
            return current
        return self.external_id(items[-1])

    async def after_ingest(self, db: Session, source: SourceT, ingested: list[Any]) -> None:
        """Hook for follow-up work on newly ingested items."""

    def mark_source_inactive(self, db: Session, source: SourceT, error: str) -> None:
        db.rollback()
        source.is_active = False
        source.status = SourceStatus.INACTIVE.value
        source.last_error = error[:1000]
        db.commit()

    async def run(self, db: Session, now: datetime | None = None) -> PollRunResult:
        now = now or datetime.now(timezone.utc)
        result = PollRunResult()

        sources = self.list_sources(db)
        logger.info("%s: polling %s sources", self.job_name, len(sources))

        for source in sources:
            result.sources_checked += 1
            source_id = source.id
            log_extra = build_log_context(job_name=self.job_name, source_id=str(source_id))
            try:
                await self._poll_source(db, source, now, result)
            except SourceAuthError as exc:
                logger.warning("Source credentials rejected, deactivating: %s", exc, extra=log_extra)
                self.mark_source_inactive(db, source, str(exc))
                result.sources_deactivated += 1
            except Exception as exc:
                db.rollback()
                logger.exception("Polling source failed", extra=log_extra)
                result.sources_failed += 1
                result.errors.append(f"{source_id}: {exc.__class__.__name__}: {exc}")

        return result

    async def _poll_source(
        self, db: Session, source: SourceT, now: datetime, result: PollRunResult
    ) -> None:
        checkpoint = get_or_create_checkpoint(db, self.source_type, source.id)
        checkpoint_id = checkpoint.id
        read_cursor = checkpoint.last_seen_external_id

        items = await self.fetch_items(source, checkpoint, now)
        result.items_fetched += len(items)

        ingested = []
        duplicates = 0
        seen: set[str] = set()
        for item in items:
            external_id = self.external_id(item)
            if external_id in seen or self.exists(db, source, external_id):
                duplicates += 1
                continue
            seen.add(external_id)
            self.persist(db, source, item, now)
            ingested.append(item)

        try:
            db.commit()
        except IntegrityError:
            # A concurrent run ingested some of these; store the rest one by one
            db.rollback()
            ingested = self._persist_individually(db, source, items, now)
            duplicates = len(items) - len(ingested)

        result.items_ingested += len(ingested)
        result.duplicates += duplicates
        if ingested:
            await self.after_ingest(db, source, ingested)

        new_cursor = self.cursor_after(items, read_cursor)
        if not advance_checkpoint(db, checkpoint_id, read_cursor, new_cursor, now):
            logger.info(
                "%s: checkpoint moved by another run, leaving it", self.job_name,
                extra=build_log_context(source_id=str(source.id)),
            )

    def _persist_individually(
        self, db: Session, source: SourceT, items: list[Any], now: datetime
    ) -> list[Any]:
        ingested = []
        seen: set[str] = set()
        for item in items:
            external_id = self.external_id(item)
            if external_id in seen or self.exists(db, source, external_id):
                continue
            seen.add(external_id)
            self.persist(db, source, item, now)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                continue
            ingested.append(item)
        return ingested


def check_source_response(response: httpx.Response, platform: str) -> None:
    """Raise SourceAuthError on 401/403 and SourceFetchError on other errors."""
    if response.status_code in AUTH_FAILURE_STATUSES:
        raise SourceAuthError(
            f"{platform} API authentication failed - token may be expired",
            status_code=response.status_code,
        )
    if response.status_code >= 400:
        raise SourceFetchError(f"{platform} API error: {response.status_code}")


_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_platform_time(value: str | None) -> datetime | None:
    """Parse platform timestamps ("...Z", "...+0000", "...+00:00") as UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def latest_timestamp_cursor(times: list[datetime | None], current: str | None) -> str | None:
    """ISO cursor for the newest timestamp seen, never moving backwards."""
    newest = parse_platform_time(current)
    for value in times:
        if value is not None and (newest is None or value > newest):
            newest = value
    return newest.isoformat() if newest else current
