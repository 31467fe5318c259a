#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Candidate Filters

Hard filter checks applied to catalog candidates before anything is
downloaded: duplicates, manga, aspect ratio, pixel size, view count,
previously deleted artworks and content rating.

The checks form an ordered chain of (name, predicate) pairs. Evaluation
stops at the first failing predicate, so the cheapest and most frequently
rejecting checks come first.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from candidate_sources import GRADUATED_RATINGS, Candidate, Category, ContentRating

logger = logging.getLogger("artwork_curator")

# Settings sliders store sizes in tens of pixels and views in units of 500
PIXEL_SIZE_SCALE = 10
VIEW_COUNT_SCALE = 500
BYTES_PER_MB = 1024 * 1024


class AspectRatioMode(Enum):
    ANY = "any"
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class RejectReason(Enum):
    DUPLICATE = "duplicate"
    CATEGORY = "category"
    ASPECT = "aspect"
    SIZE = "size"
    VIEWS = "views"
    DELETED = "deleted"
    RATING = "rating"
    FILE_SIZE = "file_size"


class DuplicateLookup(Protocol):
    """Read-only view of gallery contents and user deletions."""

    def is_duplicate(self, artwork_id: int) -> bool: ...

    def was_deleted(self, artwork_id: int) -> bool: ...


@dataclass(frozen=True)
class FilterCriteria:
    """Filter settings, read once per pipeline run."""
    allow_manga: bool = False
    allowed_ratings: frozenset[ContentRating] = frozenset({ContentRating.SAFE})
    allow_restricted: bool = False
    aspect_ratio_mode: AspectRatioMode = AspectRatioMode.ANY
    min_views: int = 0
    min_width: int = 0
    min_height: int = 0
    max_file_size_mb: int = 0  # 0 disables the file size check

    @property
    def allows_every_rating(self) -> bool:
        return self.allow_restricted and GRADUATED_RATINGS <= self.allowed_ratings

    @classmethod
    def permissive(cls) -> "FilterCriteria":
        """Criteria that accept every candidate."""
        return cls(
            allow_manga=True,
            allowed_ratings=GRADUATED_RATINGS,
            allow_restricted=True,
        )


@dataclass(frozen=True)
class FilterResult:
    """Result of applying filters to a candidate."""
    passed: bool
    reason: Optional[RejectReason] = None

    def __bool__(self) -> bool:
        return self.passed


PASSED = FilterResult(passed=True)

Predicate = Callable[[Candidate, FilterCriteria, DuplicateLookup], bool]


# =============================================================================
# PREDICATES
# =============================================================================

def is_not_duplicate(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    return not lookup.is_duplicate(candidate.id)


def is_wanted_category(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    return criteria.allow_manga or candidate.category is not Category.MANGA


def has_desired_aspect_ratio(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    if criteria.aspect_ratio_mode is AspectRatioMode.LANDSCAPE:
        return candidate.height <= candidate.width
    if criteria.aspect_ratio_mode is AspectRatioMode.PORTRAIT:
        return candidate.height >= candidate.width
    return True


def has_desired_pixel_size(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    wide_enough = candidate.width >= criteria.min_width * PIXEL_SIZE_SCALE
    tall_enough = candidate.height >= criteria.min_height * PIXEL_SIZE_SCALE
    if criteria.aspect_ratio_mode is AspectRatioMode.LANDSCAPE:
        return wide_enough
    if criteria.aspect_ratio_mode is AspectRatioMode.PORTRAIT:
        return tall_enough
    return wide_enough and tall_enough


def has_enough_views(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    return candidate.view_count >= criteria.min_views * VIEW_COUNT_SCALE


def was_not_deleted(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    return not lookup.was_deleted(candidate.id)


def has_allowed_rating(candidate: Candidate, criteria: FilterCriteria, lookup: DuplicateLookup) -> bool:
    if criteria.allows_every_rating:
        return True
    if candidate.content_rating is ContentRating.RESTRICTED:
        return criteria.allow_restricted
    return candidate.content_rating in criteria.allowed_ratings


FILTER_CHAIN: tuple[tuple[RejectReason, Predicate], ...] = (
    (RejectReason.DUPLICATE, is_not_duplicate),
    (RejectReason.CATEGORY, is_wanted_category),
    (RejectReason.ASPECT, has_desired_aspect_ratio),
    (RejectReason.SIZE, has_desired_pixel_size),
    (RejectReason.VIEWS, has_enough_views),
    (RejectReason.DELETED, was_not_deleted),
    (RejectReason.RATING, has_allowed_rating),
)


def evaluate(
    candidate: Candidate,
    criteria: FilterCriteria,
    lookup: DuplicateLookup,
    skip_rating: bool = False,
) -> FilterResult:
    """
    Apply the filter chain to a single candidate.

    Args:
        candidate: Catalog entry to check.
        criteria: Filter settings for this run.
        lookup: Duplicate / deletion registry.
        skip_rating: Set for feeds that are already safe-for-work only.

    Returns:
        FilterResult carrying the first failing reason, if any.
    """
    for reason, predicate in FILTER_CHAIN:
        if skip_rating and reason is RejectReason.RATING:
            continue
        if not predicate(candidate, criteria, lookup):
            logger.debug(f"Rejected {candidate.id}: {reason.value}")
            return FilterResult(passed=False, reason=reason)
    return PASSED


def check_file_size(byte_length: Optional[int], criteria: FilterCriteria) -> FilterResult:
    """
    Optional size limit, checked once the image response is known.

    An unknown length (no Content-Length header) passes.
    """
    if not criteria.max_file_size_mb or byte_length is None:
        return PASSED
    if byte_length > criteria.max_file_size_mb * BYTES_PER_MB:
        return FilterResult(passed=False, reason=RejectReason.FILE_SIZE)
    return PASSED
