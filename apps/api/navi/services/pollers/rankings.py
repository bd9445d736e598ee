"""Rank tracker - daily search rank snapshot per tracked keyword."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable
from urllib.parse import urlparse

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from navi.core.config import Settings, settings as app_settings
from navi.core.exceptions import SourceFetchError
from navi.db.enums import JobName, PollSourceType
from navi.db.models import KeywordRankSnapshot, PollCheckpoint, TrackedKeyword
from navi.services.http_service import request_with_retries
from navi.services.polling_service import PollingDispatcher, check_source_response

logger = logging.getLogger(__name__)

SERPAPI_SEARCH_URL = "https://serpapi.com/search.json"
MAX_TRACKED_RANK = 100


class RankProvider(ABC):
    """Looks up where a domain ranks for a keyword."""

    @abstractmethod
    async def get_rank(self, keyword: str, domain: str, location: str | None) -> int | None:
        """1-based organic position, or None if not in the top 100."""


def _normalize_domain(value: str) -> str:
    host = urlparse(value if "//" in value else f"//{value}").hostname or value
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


class SerpApiRankProvider(RankProvider):
    """Google organic results via SerpApi."""

    def __init__(
        self,
        api_key: str,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.api_key = api_key
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=30.0))

    async def get_rank(self, keyword: str, domain: str, location: str | None) -> int | None:
        if not self.api_key:
            raise SourceFetchError("SERPAPI_API_KEY not configured")

        params = {
            "engine": "google",
            "q": keyword,
            "num": MAX_TRACKED_RANK,
            "api_key": self.api_key,
        }
        if location:
            params["location"] = location

        async with self.client_factory() as client:
            response = await request_with_retries(
                lambda: client.get(SERPAPI_SEARCH_URL, params=params)
            )
        check_source_response(response, "SerpApi")

        target = _normalize_domain(domain)
        for result in response.json().get("organic_results", []):
            link = result.get("link") or ""
            host = _normalize_domain(link)
            if host == target or host.endswith(f".{target}"):
                return int(result.get("position") or 0) or None
        return None


def build_rank_provider(settings: Settings | None = None) -> RankProvider:
    settings = settings or app_settings
    return SerpApiRankProvider(settings.SERPAPI_API_KEY)


@dataclass(frozen=True)
class RankItem:
    snapshot_key: str
    snapshot_date: date
    rank: int | None
    competitor_ranks: dict[str, int | None] = field(default_factory=dict)


class RankTracker(PollingDispatcher[TrackedKeyword]):
    """One snapshot per keyword per UTC day; a second run the same day is a no-op."""

    source_type = PollSourceType.RANKINGS
    job_name = JobName.RANK_TRACKING.value

    def __init__(self, provider: RankProvider):
        self.provider = provider

    def list_sources(self, db: Session) -> list[TrackedKeyword]:
        return list(
            db.execute(
                select(TrackedKeyword)
                .where(TrackedKeyword.is_active.is_(True))
                .order_by(TrackedKeyword.created_at)
            ).scalars().all()
        )

    async def fetch_items(
        self, source: TrackedKeyword, checkpoint: PollCheckpoint, now: datetime
    ) -> list[RankItem]:
        today = now.date()
        key = today.isoformat()
        if checkpoint.last_seen_external_id == key:
            return []

        rank = await self.provider.get_rank(source.keyword, source.domain, source.location)
        competitor_ranks = {}
        for competitor in source.competitors or []:
            competitor_ranks[competitor] = await self.provider.get_rank(
                source.keyword, competitor, source.location
            )
        logger.info(
            "Keyword %s: rank %s", source.id, rank if rank is not None else "not ranked"
        )
        return [
            RankItem(
                snapshot_key=key,
                snapshot_date=today,
                rank=rank,
                competitor_ranks=competitor_ranks,
            )
        ]

    def external_id(self, item: RankItem) -> str:
        return item.snapshot_key

    def exists(self, db: Session, source: TrackedKeyword, external_id: str) -> bool:
        return db.execute(
            select(KeywordRankSnapshot.id).where(
                KeywordRankSnapshot.keyword_id == source.id,
                KeywordRankSnapshot.snapshot_key == external_id,
            )
        ).first() is not None

    def persist(self, db: Session, source: TrackedKeyword, item: RankItem, now: datetime) -> None:
        db.add(
            KeywordRankSnapshot(
                user_id=source.user_id,
                keyword_id=source.id,
                snapshot_key=item.snapshot_key,
                snapshot_date=item.snapshot_date,
                rank=item.rank,
                competitor_ranks=item.competitor_ranks,
            )
        )
