import io
import json
from typing import Any, Callable, Optional, Union

import pytest
from PIL import Image


# =============================================================================
# FAKE AIOHTTP
# =============================================================================

class FakeContent:
    def __init__(self, body: bytes, error: Optional[BaseException] = None):
        self.body = body
        self.error = error

    async def iter_chunked(self, n: int):
        for start in range(0, len(self.body), n):
            yield self.body[start:start + n]
        if self.error is not None:
            raise self.error


class FakeResponse:
    """Just enough of aiohttp.ClientResponse for the pipeline."""

    def __init__(
        self,
        status: int = 200,
        body: bytes = b"",
        json_data: Any = None,
        content_length: Optional[int] = None,
        stream_error: Optional[BaseException] = None,
    ):
        self.status = status
        self.body = body
        self.json_data = json_data
        self.content_length = len(body) if content_length is None else content_length
        self.content = FakeContent(body, stream_error)
        self.released = False

    async def json(self, content_type: Optional[str] = "application/json") -> Any:
        if self.json_data is None:
            return json.loads(self.body.decode() or "not json")
        return self.json_data

    async def text(self) -> str:
        return self.body.decode(errors="replace")

    def release(self) -> None:
        self.released = True

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()


class FakeRequest:
    """Awaitable and async context manager, like aiohttp's request wrapper."""

    def __init__(self, outcome: Union[FakeResponse, BaseException]):
        self.outcome = outcome

    async def _resolve(self) -> FakeResponse:
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    def __await__(self):
        return self._resolve().__await__()

    async def __aenter__(self) -> FakeResponse:
        return await self._resolve()

    async def __aexit__(self, *exc_info) -> None:
        if isinstance(self.outcome, FakeResponse):
            self.outcome.release()


Handler = Callable[[str, str, dict], Union[FakeResponse, BaseException]]


class FakeSession:
    """
    In-memory stand-in for aiohttp.ClientSession.

    ``handler(method, url, params)`` returns the response (or the exception
    to raise) for each request. Every request is recorded in ``requests``.
    """

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: list[dict[str, Any]] = []

    def _request(self, method: str, url: str, **kwargs: Any) -> FakeRequest:
        params = dict(kwargs.get("params") or {})
        self.requests.append({**kwargs, "method": method, "url": url, "params": params})
        return FakeRequest(self.handler(method, url, params))

    def get(self, url: str, **kwargs: Any) -> FakeRequest:
        return self._request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeRequest:
        return self._request("POST", url, **kwargs)

    def urls(self, method: str = "GET") -> list[str]:
        return [r["url"] for r in self.requests if r["method"] == method]

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        pass


def routes(mapping: dict[str, Union[FakeResponse, BaseException]]) -> Handler:
    """Handler answering by exact URL, 404 for anything else."""
    def handler(method: str, url: str, params: dict) -> Union[FakeResponse, BaseException]:
        return mapping.get(url, FakeResponse(status=404))
    return handler


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================

def thumbnail_url(artwork_id: int, extension: str = ".jpg") -> str:
    return (
        "https://i.pximg.net/c/240x480/img-master/img/2024/03/01/00/00/00/"
        f"{artwork_id}_p0_master1200{extension}"
    )


def original_url(artwork_id: int, extension: str) -> str:
    return f"https://i.pximg.net/img-original/img/2024/03/01/00/00/00/{artwork_id}_p0{extension}"


def ranking_entry(
    artwork_id: int,
    rank: int = 1,
    width: int = 1200,
    height: int = 800,
    view_count: int = 10000,
    sexual: int = 0,
    illust_type: str = "0",
) -> dict[str, Any]:
    return {
        "illust_id": artwork_id,
        "title": f"Artwork {artwork_id}",
        "user_name": f"artist{artwork_id}",
        "width": width,
        "height": height,
        "view_count": view_count,
        "illust_type": illust_type,
        "illust_content_type": {"sexual": sexual},
        "url": thumbnail_url(artwork_id),
        "rank": rank,
    }


def ranking_payload(
    entries: list[dict[str, Any]],
    page: int = 1,
    date: str = "20240301",
    prev_date: Optional[str] = "20240229",
    next_page: Any = None,
) -> dict[str, Any]:
    if next_page is None:
        next_page = page + 1
    return {
        "contents": entries,
        "mode": "daily",
        "date": date,
        "page": page,
        "prev": page - 1 if page > 1 else False,
        "next": next_page,
        "prev_date": prev_date or False,
        "next_date": False,
        "rank_total": 500,
    }


def image_bytes(fmt: str = "PNG", size: tuple[int, int] = (8, 8), color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, fmt)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return image_bytes("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return image_bytes("JPEG")


class StaticRegistry:
    """DuplicateLookup over fixed id sets."""

    def __init__(self, gallery_ids=(), deleted_ids=()):
        self.gallery_ids = set(gallery_ids)
        self.deleted_ids = set(deleted_ids)

    def is_duplicate(self, artwork_id: int) -> bool:
        return artwork_id in self.gallery_ids

    def was_deleted(self, artwork_id: int) -> bool:
        return artwork_id in self.deleted_ids

