import asyncio
import io
import random

import aiohttp
import pytest
from PIL import Image

from acquisition_pipeline import AcquisitionConfig, AcquisitionPipeline, ArtworkDescriptor
from candidate_sources import RANKING_URL, AuthFeedSource, RankingFeedSource
from conftest import (
    FakeResponse,
    FakeSession,
    StaticRegistry,
    original_url,
    ranking_entry,
    ranking_payload,
)
from filters import FilterCriteria
from pipeline_robustness import CorruptFileError, ExtensionNotFoundError


def catalog_and_images(entries, images, catalog_status=200):
    """Single-page ranking catalog plus an image origin keyed by URL."""
    def handler(method, url, params):
        if url == RANKING_URL:
            if catalog_status != 200:
                return FakeResponse(status=catalog_status)
            return FakeResponse(json_data=ranking_payload(entries, prev_date=None, next_page=False))
        outcome = images.get(url)
        if outcome is None:
            return FakeResponse(status=404)
        if isinstance(outcome, bytes):
            return FakeResponse(body=outcome)
        return outcome
    return handler


def make_pipeline(tmp_path, handler, registry=None, **config):
    session = FakeSession(handler)
    pipeline = AcquisitionPipeline(
        session,
        RankingFeedSource(session),
        registry or StaticRegistry(),
        AcquisitionConfig(download_dir=tmp_path / "artwork", **config),
        rng=random.Random(1),
    )
    return pipeline, session


@pytest.mark.asyncio
async def test_collects_target_count_of_distinct_artworks(tmp_path, png_bytes):
    entries = [ranking_entry(i, rank=i) for i in (1, 2, 3)]
    images = {original_url(i, ".png"): png_bytes for i in (1, 2, 3)}
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, images))

    result = await pipeline.run(2, FilterCriteria.permissive())

    tokens = [a.token for a in result.artworks]
    assert len(tokens) == 2
    assert len(set(tokens)) == 2
    assert not result.failures
    assert not result.exhausted and not result.retryable
    for artwork in result.artworks:
        assert (tmp_path / "artwork" / f"{artwork.token}.png").exists()
        assert artwork.local_uri.startswith("file://")
        assert artwork.web_uri == f"https://www.pixiv.net/en/artworks/{artwork.token}"
        assert artwork.attribution == f"2024/03/01 Daily ranking #{artwork.token}"
        assert artwork.byline == f"artist{artwork.token}"
    assert not list((tmp_path / "artwork").glob("*.part"))


@pytest.mark.asyncio
async def test_jpeg_keeps_jpg_extension(tmp_path, jpeg_bytes):
    entries = [ranking_entry(8)]
    pipeline, session = make_pipeline(tmp_path, catalog_and_images(entries, {original_url(8, ".jpg"): jpeg_bytes}))

    result = await pipeline.run(1, FilterCriteria())

    assert result.artworks[0].local_uri.endswith("/8.jpg")
    assert session.urls()[1:] == [original_url(8, ".jpg")]


@pytest.mark.asyncio
async def test_corrupt_download_skips_item(tmp_path, png_bytes):
    entries = [ranking_entry(1), ranking_entry(2)]
    images = {
        original_url(1, ".png"): png_bytes[:-12],
        original_url(2, ".png"): png_bytes,
    }
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, images))

    result = await pipeline.run(2, FilterCriteria())

    # A skipped item still uses up its slot
    assert [a.token for a in result.artworks] == ["2"]
    assert len(result.failures) == 1
    assert result.failures[0].artwork_id == "1"
    assert result.failures[0].message.startswith(CorruptFileError.__name__)
    assert not result.exhausted
    assert not list((tmp_path / "artwork").glob("*.part"))


@pytest.mark.asyncio
async def test_unresolvable_extension_skips_item(tmp_path, png_bytes):
    entries = [ranking_entry(1), ranking_entry(2)]
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, {original_url(2, ".png"): png_bytes}))

    result = await pipeline.run(2, FilterCriteria())

    assert [a.token for a in result.artworks] == ["2"]
    assert result.failures[0].artwork_id == "1"
    assert result.failures[0].message.startswith(ExtensionNotFoundError.__name__)


@pytest.mark.asyncio
async def test_oversized_image_skipped_before_download(tmp_path, png_bytes):
    entries = [ranking_entry(1)]
    big = FakeResponse(body=png_bytes, content_length=5 * 1024 * 1024)
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, {original_url(1, ".png"): big}))

    result = await pipeline.run(1, FilterCriteria(max_file_size_mb=2))

    assert result.artworks == []
    assert big.released
    assert not (tmp_path / "artwork" / "1.png").exists()


@pytest.mark.asyncio
async def test_stream_failure_stops_run_as_retryable(tmp_path, png_bytes):
    entries = [ranking_entry(1)]
    broken = FakeResponse(body=png_bytes, stream_error=aiohttp.ClientPayloadError("cut"))
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, {original_url(1, ".png"): broken}))

    result = await pipeline.run(1, FilterCriteria())

    assert result.retryable
    assert result.artworks == []
    assert not (tmp_path / "artwork" / "1.part").exists()


@pytest.mark.asyncio
async def test_catalog_failure_is_retryable(tmp_path):
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images([], {}, catalog_status=500))

    result = await pipeline.run(2, FilterCriteria())

    assert result.retryable
    assert result.failures[0].stage == "fetch"


@pytest.mark.asyncio
async def test_cancellation_removes_partial_file(tmp_path, png_bytes):
    entries = [ranking_entry(1)]
    cancelled = FakeResponse(body=png_bytes, stream_error=asyncio.CancelledError())
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, {original_url(1, ".png"): cancelled}))

    with pytest.raises(asyncio.CancelledError):
        await pipeline.run(1, FilterCriteria())

    assert not (tmp_path / "artwork" / "1.part").exists()


@pytest.mark.asyncio
async def test_cancellation_before_download_releases_response(tmp_path, png_bytes):
    entries = [ranking_entry(1)]
    opened = FakeResponse(body=png_bytes)
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, {original_url(1, ".png"): opened}))

    async def cancelled_download(response, token):
        raise asyncio.CancelledError()

    pipeline.downloader.download = cancelled_download

    with pytest.raises(asyncio.CancelledError):
        await pipeline.run(1, FilterCriteria())

    assert opened.released


@pytest.mark.asyncio
async def test_existing_download_is_reused(tmp_path, png_bytes):
    download_dir = tmp_path / "artwork"
    download_dir.mkdir()
    (download_dir / "5.png").write_bytes(png_bytes)
    pipeline, session = make_pipeline(tmp_path, catalog_and_images([ranking_entry(5)], {}))

    result = await pipeline.run(1, FilterCriteria())

    assert [a.token for a in result.artworks] == ["5"]
    assert session.urls() == [RANKING_URL]


@pytest.mark.asyncio
async def test_auto_crop_rewrites_as_png(tmp_path):
    img = Image.new("RGB", (60, 60), (255, 255, 255))
    img.paste((0, 0, 0), (15, 15, 45, 45))
    buffer = io.BytesIO()
    img.save(buffer, "JPEG", quality=95)
    entries = [ranking_entry(9)]
    images = {original_url(9, ".jpg"): buffer.getvalue()}
    pipeline, _ = make_pipeline(tmp_path, catalog_and_images(entries, images), auto_crop=True)

    result = await pipeline.run(1, FilterCriteria())

    assert result.artworks[0].local_uri.endswith("/9.png")
    assert not (tmp_path / "artwork" / "9.jpg").exists()


def test_descriptor_dict_round_trip():
    artwork = ArtworkDescriptor(
        token="1", title="t", byline="b", attribution="a",
        local_uri="file:///tmp/1.png", web_uri="https://www.pixiv.net/en/artworks/1",
    )
    assert ArtworkDescriptor.from_dict(artwork.to_dict()) == artwork


@pytest.mark.asyncio
async def test_feed_artwork_uses_original_url(tmp_path, png_bytes):
    original = "https://i.pximg.net/img-original/img/2024/01/01/00/00/00/77_p0.png"
    illust = {
        "id": 77, "title": "Feed", "type": "illust", "user": {"name": "painter"},
        "width": 1000, "height": 1000, "total_view": 100, "sanity_level": 2, "x_restrict": 0,
        "image_urls": {"medium": ""}, "meta_single_page": {"original_image_url": original},
    }

    def handler(method, url, params):
        if url == original:
            return FakeResponse(body=png_bytes)
        return FakeResponse(json_data={"illusts": [illust], "next_url": None})

    session = FakeSession(handler)
    pipeline = AcquisitionPipeline(
        session,
        AuthFeedSource(session, "bookmark", access_token="token", user_id="5"),
        StaticRegistry(),
        AcquisitionConfig(download_dir=tmp_path),
    )

    result = await pipeline.run(1, FilterCriteria())

    artwork = result.artworks[0]
    assert artwork.attribution == "Bookmarks"
    assert artwork.byline == "painter"
    assert session.requests[1]["headers"]["Referer"] == "https://www.pixiv.net/"
    assert (tmp_path / "77.png").exists()
