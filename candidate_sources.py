#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Candidate Sources

Fetches pages of artwork candidates from the two pixiv catalog families:

- Authenticated feed (app API): follow, bookmark, recommended, artist and
  tag search. Pages are chained by the opaque ``next_url`` of each response.
- Public ranking (ranking.php): daily, weekly, monthly, rookie, original,
  male and female rankings, paged by ``(page, date)`` with a fall back to
  the previous day once the page cap is reached.

Both variants share the fetch_first_page / fetch_next_page contract so the
selection loop never branches on the update mode.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Optional, Union

import aiohttp

from pipeline_robustness import TransportError

logger = logging.getLogger("artwork_curator")

PIXIV_HOST_URL = "https://www.pixiv.net/"
PIXIV_ARTWORK_URL = "https://www.pixiv.net/en/artworks/"
APP_API_URL = "https://app-api.pixiv.net"
RANKING_URL = "https://www.pixiv.net/ranking.php"

APP_HEADERS = {
    "App-OS": "android",
    "App-OS-Version": "9.0",
    "User-Agent": "PixivAndroidApp/5.0.175 (Android 9.0; Pixel 3)",
}
WEB_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Referer": PIXIV_HOST_URL,
}

AUTH_MODES = ("follow", "bookmark", "recommended", "artist", "tag_search")
RANKING_MODES = ("daily", "weekly", "monthly", "rookie", "original", "male", "female")

# Ranking only exposes the top 450 (9 pages of 50) per day reliably
RANKING_PAGE_CAP = 9


# =============================================================================
# DATA MODELS
# =============================================================================

class ContentRating(IntEnum):
    """
    Normalised content rating.

    The graduated scale follows pixiv's ``sanity_level``. RESTRICTED stands in
    for ``x_restrict`` and sits above the graduated scale.
    """
    SAFE = 2
    SUGGESTIVE = 4
    EXPLICIT = 6
    RESTRICTED = 8


GRADUATED_RATINGS = frozenset({ContentRating.SAFE, ContentRating.SUGGESTIVE, ContentRating.EXPLICIT})


class Category(Enum):
    ILLUSTRATION = "illustration"
    MANGA = "manga"


@dataclass(frozen=True)
class Candidate:
    """One catalog entry considered for selection."""
    id: int
    title: str
    author_name: str
    width: int
    height: int
    view_count: int
    content_rating: ContentRating
    category: Category
    source_thumbnail_url: str
    rank: Optional[int] = None
    page_date: Optional[str] = None
    image_urls: tuple[str, ...] = ()

    @property
    def token(self) -> str:
        return str(self.id)

    @property
    def web_uri(self) -> str:
        return f"{PIXIV_ARTWORK_URL}{self.id}"

    def __repr__(self) -> str:
        return f"Candidate(id={self.id}, author={self.author_name}, {self.width}x{self.height})"


@dataclass(frozen=True)
class CursorContinuation:
    """Next-page cursor of the authenticated feed."""
    next_url: Optional[str]

    @property
    def is_terminal(self) -> bool:
        return not self.next_url


@dataclass(frozen=True)
class RankingContinuation:
    """Position within the daily rankings."""
    mode: str
    page: int
    date: str
    prev_date: Optional[str]
    has_next_page: bool = True
    page_cap: int = RANKING_PAGE_CAP

    @property
    def can_advance_page(self) -> bool:
        return self.page < self.page_cap and self.has_next_page

    @property
    def is_terminal(self) -> bool:
        return not self.can_advance_page and not self.prev_date


Continuation = Union[CursorContinuation, RankingContinuation]


@dataclass(frozen=True)
class CandidatePage:
    """An ordered page of candidates plus how to reach the next page."""
    candidates: tuple[Candidate, ...]
    continuation: Continuation
    attribution: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.continuation.is_terminal


# =============================================================================
# PAYLOAD PARSING
# =============================================================================

def parse_auth_illust(illust: dict[str, Any]) -> Candidate:
    """Convert one app-API illust object into a Candidate."""
    if illust.get("x_restrict", 0) >= 1:
        rating = ContentRating.RESTRICTED
    else:
        rating = _graduated_rating(illust.get("sanity_level", 2))

    meta_pages = illust.get("meta_pages") or []
    if meta_pages:
        image_urls = tuple(p["image_urls"]["original"] for p in meta_pages)
    else:
        original = (illust.get("meta_single_page") or {}).get("original_image_url")
        image_urls = (original,) if original else ()

    return Candidate(
        id=int(illust["id"]),
        title=illust.get("title", ""),
        author_name=(illust.get("user") or {}).get("name", ""),
        width=int(illust.get("width", 0)),
        height=int(illust.get("height", 0)),
        view_count=int(illust.get("total_view", 0)),
        content_rating=rating,
        category=Category.MANGA if illust.get("type") == "manga" else Category.ILLUSTRATION,
        source_thumbnail_url=(illust.get("image_urls") or {}).get("medium", ""),
        image_urls=image_urls,
    )


def parse_ranking_artwork(artwork: dict[str, Any], page_date: str) -> Candidate:
    """Convert one ranking.php entry into a Candidate."""
    content_type = artwork.get("illust_content_type") or {}
    sexual = int(content_type.get("sexual", 0))
    rating = {0: ContentRating.SAFE, 1: ContentRating.SUGGESTIVE}.get(sexual, ContentRating.EXPLICIT)

    return Candidate(
        id=int(artwork["illust_id"]),
        title=artwork.get("title", ""),
        author_name=artwork.get("user_name", ""),
        width=int(artwork.get("width", 0)),
        height=int(artwork.get("height", 0)),
        view_count=int(artwork.get("view_count", 0)),
        content_rating=rating,
        category=Category.MANGA if str(artwork.get("illust_type")) == "1" else Category.ILLUSTRATION,
        source_thumbnail_url=artwork.get("url", ""),
        rank=artwork.get("rank"),
        page_date=page_date,
    )


def _graduated_rating(sanity_level: int) -> ContentRating:
    if sanity_level >= 6:
        return ContentRating.EXPLICIT
    if sanity_level >= 4:
        return ContentRating.SUGGESTIVE
    return ContentRating.SAFE


def format_ranking_date(date: str) -> str:
    """20200219 -> 2020/02/19"""
    return datetime.strptime(date, "%Y%m%d").strftime("%Y/%m/%d")


# =============================================================================
# SOURCES
# =============================================================================

class CandidateSource(ABC):
    """Common contract of both catalog families."""

    # Set when the feed only ever serves safe-for-work artworks
    rating_prefiltered: bool = False

    def __init__(
        self,
        session: aiohttp.ClientSession,
        debug_dump_dir: Optional[Path] = None,
        timeout_sec: float = 30.0,
    ):
        self.session = session
        self.debug_dump_dir = debug_dump_dir
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

    @abstractmethod
    async def fetch_first_page(self) -> CandidatePage:
        """Fetch the first page for the configured mode."""

    @abstractmethod
    async def fetch_next_page(self, continuation: Continuation) -> CandidatePage:
        """Fetch the page following ``continuation``."""

    async def _get_json(
        self,
        url: str,
        headers: dict[str, str],
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """GET a catalog endpoint, mapping every failure to TransportError."""
        try:
            async with self.session.get(url, headers=headers, params=params, timeout=self.timeout) as response:
                if response.status != 200:
                    raise TransportError(f"Catalog request failed: HTTP {response.status} for {url}",
                                         status=response.status)
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Catalog request failed for {url}: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"Catalog returned invalid JSON for {url}: {e}") from e

        if not isinstance(data, dict):
            raise TransportError(f"Unexpected catalog payload from {url}")
        self._dump(data)
        return data

    def _dump(self, data: dict[str, Any]) -> None:
        """Write the raw payload for debugging when enabled."""
        if self.debug_dump_dir is None:
            return
        self.debug_dump_dir.mkdir(parents=True, exist_ok=True)
        name = f"{type(self).__name__}_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.json"
        with open(self.debug_dump_dir / name, "w") as f:
            json.dump(data, f, indent=2)


class AuthFeedSource(CandidateSource):
    """Authenticated app-API feeds, chained by ``next_url``."""

    MODE_LABELS = {
        "follow": "Following feed",
        "bookmark": "Bookmarks",
        "recommended": "Recommended",
        "artist": "Artist feed",
        "tag_search": "Tag search",
    }

    def __init__(
        self,
        session: aiohttp.ClientSession,
        mode: str,
        access_token: str,
        user_id: str = "",
        artist_id: str = "",
        tag: str = "",
        **kwargs: Any,
    ):
        if mode not in AUTH_MODES:
            raise ValueError(f"Unknown feed mode: {mode}")
        super().__init__(session, **kwargs)
        self.mode = mode
        self.user_id = user_id
        self.artist_id = artist_id
        self.tag = tag
        self.headers = {**APP_HEADERS, "Authorization": f"Bearer {access_token}"}
        self.rating_prefiltered = mode == "recommended"

    def first_page_request(self) -> tuple[str, dict[str, str]]:
        """Endpoint and query parameters for the first page of this mode."""
        if self.mode == "follow":
            return f"{APP_API_URL}/v2/illust/follow", {"restrict": "public"}
        if self.mode == "bookmark":
            return f"{APP_API_URL}/v1/user/bookmarks/illust", {"user_id": self.user_id, "restrict": "public"}
        if self.mode == "recommended":
            return f"{APP_API_URL}/v1/illust/recommended", {"content_type": "illust", "include_ranking_label": "true"}
        if self.mode == "artist":
            return f"{APP_API_URL}/v1/user/illusts", {"user_id": self.artist_id, "type": "illust"}
        return f"{APP_API_URL}/v1/search/illust", {
            "word": self.tag,
            "search_target": "partial_match_for_tags",
            "sort": "date_desc",
        }

    async def fetch_first_page(self) -> CandidatePage:
        url, params = self.first_page_request()
        logger.info(f"Fetching {self.MODE_LABELS[self.mode]} first page")
        return self._to_page(await self._get_json(url, self.headers, params))

    async def fetch_next_page(self, continuation: Continuation) -> CandidatePage:
        if not isinstance(continuation, CursorContinuation) or continuation.is_terminal:
            raise ValueError(f"Cannot continue feed from {continuation}")
        logger.info(f"Following {self.MODE_LABELS[self.mode]} next_url")
        # The cursor already carries every query parameter
        return self._to_page(await self._get_json(continuation.next_url, self.headers))

    def _to_page(self, data: dict[str, Any]) -> CandidatePage:
        candidates = []
        for illust in data.get("illusts", []):
            try:
                candidates.append(parse_auth_illust(illust))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed illust {illust.get('id')}: {e}")
        return CandidatePage(
            candidates=tuple(candidates),
            continuation=CursorContinuation(data.get("next_url")),
            attribution=self.MODE_LABELS[self.mode],
        )


class RankingFeedSource(CandidateSource):
    """Public rankings, paged by ``(page, date)``."""

    MODE_LABELS = {
        "daily": "Daily ranking",
        "weekly": "Weekly ranking",
        "monthly": "Monthly ranking",
        "rookie": "Rookie ranking",
        "original": "Original ranking",
        "male": "Male ranking",
        "female": "Female ranking",
    }

    def __init__(
        self,
        session: aiohttp.ClientSession,
        mode: str = "daily",
        page_cap: int = RANKING_PAGE_CAP,
        **kwargs: Any,
    ):
        if mode not in RANKING_MODES:
            raise ValueError(f"Unknown ranking mode: {mode}")
        super().__init__(session, **kwargs)
        self.mode = mode
        self.page_cap = page_cap

    async def fetch_first_page(self) -> CandidatePage:
        return await self._fetch(page=1, date=None)

    async def fetch_next_page(self, continuation: Continuation) -> CandidatePage:
        if not isinstance(continuation, RankingContinuation):
            raise ValueError(f"Cannot continue ranking from {continuation}")

        if continuation.can_advance_page:
            return await self._fetch(page=continuation.page + 1, date=continuation.date)

        if not continuation.prev_date:
            raise ValueError(f"Ranking {continuation.date} has no previous day")

        logger.info(f"Ranking {continuation.date} exhausted, falling back to {continuation.prev_date}")
        return await self._fetch(page=1, date=continuation.prev_date)

    async def _fetch(self, page: int, date: Optional[str]) -> CandidatePage:
        params: dict[str, Any] = {"format": "json", "mode": self.mode, "p": page}
        if date:
            params["date"] = date
        logger.info(f"Fetching {self.MODE_LABELS[self.mode]} page {page} ({date or 'latest'})")
        data = await self._get_json(RANKING_URL, WEB_HEADERS, params)

        page_date = str(data.get("date") or date or "")
        prev_date = data.get("prev_date") or None
        candidates = []
        for artwork in data.get("contents", []):
            try:
                candidates.append(parse_ranking_artwork(artwork, page_date))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed ranking entry {artwork.get('illust_id')}: {e}")

        attribution = self.MODE_LABELS[self.mode]
        if page_date:
            attribution = f"{format_ranking_date(page_date)} {attribution}"

        return CandidatePage(
            candidates=tuple(candidates),
            continuation=RankingContinuation(
                mode=self.mode,
                page=int(data.get("page") or page),
                date=page_date,
                prev_date=str(prev_date) if prev_date else None,
                has_next_page=bool(data.get("next")),
                page_cap=self.page_cap,
            ),
            attribution=attribution,
        )


def build_source(
    session: aiohttp.ClientSession,
    mode: str,
    access_token: Optional[str] = None,
    **kwargs: Any,
) -> CandidateSource:
    """
    Create the source variant for an update mode.

    Args:
        session: Shared aiohttp session.
        mode: One of AUTH_MODES or RANKING_MODES.
        access_token: Required for AUTH_MODES.
        **kwargs: Variant-specific options (user_id, artist_id, tag,
            page_cap, debug_dump_dir, timeout_sec).
    """
    if mode in AUTH_MODES:
        if not access_token:
            raise ValueError(f"Mode '{mode}' requires an access token")
        feed_options = {k: v for k, v in kwargs.items() if k != "page_cap"}
        return AuthFeedSource(session, mode, access_token, **feed_options)
    ranking_options = {k: v for k, v in kwargs.items() if k not in ("user_id", "artist_id", "tag")}
    return RankingFeedSource(session, mode, **ranking_options)
