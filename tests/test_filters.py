import dataclasses

import pytest

from candidate_sources import Candidate, Category, ContentRating, GRADUATED_RATINGS
from conftest import StaticRegistry
from filters import (
    AspectRatioMode,
    FilterCriteria,
    RejectReason,
    check_file_size,
    evaluate,
)


def make_candidate(**overrides) -> Candidate:
    fields = dict(
        id=1,
        title="t",
        author_name="a",
        width=1920,
        height=1080,
        view_count=5000,
        content_rating=ContentRating.SAFE,
        category=Category.ILLUSTRATION,
        source_thumbnail_url="",
    )
    fields.update(overrides)
    return Candidate(**fields)


def reason(candidate, criteria, registry=None, **kwargs):
    return evaluate(candidate, criteria, registry or StaticRegistry(), **kwargs).reason


def test_permissive_criteria_accept_everything():
    criteria = FilterCriteria.permissive()
    for rating in ContentRating:
        candidate = make_candidate(content_rating=rating, category=Category.MANGA, view_count=0)
        assert evaluate(candidate, criteria, StaticRegistry()).passed


def test_views_threshold_scaled_by_500():
    criteria = dataclasses.replace(FilterCriteria.permissive(), min_views=1)

    assert reason(make_candidate(view_count=499), criteria) is RejectReason.VIEWS
    assert reason(make_candidate(view_count=500), criteria) is None


def test_pixel_size_scaled_by_10():
    criteria = dataclasses.replace(FilterCriteria.permissive(), min_width=192, min_height=108)

    assert reason(make_candidate(width=1920, height=1080), criteria) is None
    assert reason(make_candidate(width=1919, height=1080), criteria) is RejectReason.SIZE
    assert reason(make_candidate(width=1920, height=1079), criteria) is RejectReason.SIZE


def test_landscape_only_checks_width():
    criteria = dataclasses.replace(
        FilterCriteria.permissive(),
        aspect_ratio_mode=AspectRatioMode.LANDSCAPE,
        min_width=100,
        min_height=100,
    )

    assert reason(make_candidate(width=1000, height=500), criteria) is None
    assert reason(make_candidate(width=500, height=1000), criteria) is RejectReason.ASPECT
    assert reason(make_candidate(width=999, height=500), criteria) is RejectReason.SIZE


def test_portrait_only_checks_height():
    criteria = dataclasses.replace(
        FilterCriteria.permissive(),
        aspect_ratio_mode=AspectRatioMode.PORTRAIT,
        min_width=100,
        min_height=100,
    )

    assert reason(make_candidate(width=500, height=1000), criteria) is None
    assert reason(make_candidate(width=1000, height=500), criteria) is RejectReason.ASPECT
    # Square artworks satisfy both orientations
    assert reason(make_candidate(width=1000, height=1000), criteria) is None


def test_manga_rejected_unless_allowed():
    manga = make_candidate(category=Category.MANGA)

    assert reason(manga, FilterCriteria()) is RejectReason.CATEGORY
    assert reason(manga, FilterCriteria(allow_manga=True)) is None


def test_duplicate_and_deleted_ids():
    registry = StaticRegistry(gallery_ids={1}, deleted_ids={2})

    assert reason(make_candidate(id=1), FilterCriteria(), registry) is RejectReason.DUPLICATE
    assert reason(make_candidate(id=2), FilterCriteria(), registry) is RejectReason.DELETED
    assert reason(make_candidate(id=3), FilterCriteria(), registry) is None


def test_first_failing_predicate_wins():
    registry = StaticRegistry(gallery_ids={1})
    candidate = make_candidate(id=1, category=Category.MANGA, view_count=0)

    assert reason(candidate, FilterCriteria(min_views=1), registry) is RejectReason.DUPLICATE


@pytest.mark.parametrize("rating,allowed", [
    (ContentRating.SAFE, True),
    (ContentRating.SUGGESTIVE, True),
    (ContentRating.EXPLICIT, False),
    (ContentRating.RESTRICTED, False),
])
def test_rating_must_be_allowed(rating, allowed):
    criteria = FilterCriteria(allowed_ratings=frozenset({ContentRating.SAFE, ContentRating.SUGGESTIVE}))
    assert evaluate(make_candidate(content_rating=rating), criteria, StaticRegistry()).passed is allowed


def test_restricted_needs_explicit_flag():
    restricted = make_candidate(content_rating=ContentRating.RESTRICTED)

    assert reason(restricted, FilterCriteria(allowed_ratings=GRADUATED_RATINGS)) is RejectReason.RATING
    assert reason(restricted, FilterCriteria(allow_restricted=True)) is None


def test_rating_check_skipped_for_prefiltered_feeds():
    explicit = make_candidate(content_rating=ContentRating.EXPLICIT)
    assert reason(explicit, FilterCriteria(), skip_rating=True) is None


def test_file_size_limit_is_optional():
    assert check_file_size(50 * 1024 * 1024, FilterCriteria()).passed
    assert check_file_size(None, FilterCriteria(max_file_size_mb=1)).passed

    limited = FilterCriteria(max_file_size_mb=1)
    assert check_file_size(1024 * 1024, limited).passed
    assert check_file_size(1024 * 1024 + 1, limited).reason is RejectReason.FILE_SIZE
