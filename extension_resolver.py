#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Extension Resolver

Ranking entries only carry a low resolution thumbnail URL, always ending in
.jpg, while the original image may be a PNG or a JPEG. The resolver rewrites
the thumbnail URL to the origin "img-original" path and tries candidate
extensions until the origin serves one of them.
"""

import asyncio
import logging
from typing import Optional, Sequence

import aiohttp

from pipeline_robustness import ExtensionNotFoundError, TransportError

logger = logging.getLogger("artwork_curator")

ORIGINAL_IMAGE_HOST = "https://i.pximg.net/img-original"
THUMBNAIL_SUFFIX = "_master1200"
# Each attempt is a full GET, so the likelier extension goes first
DEFAULT_EXTENSIONS = (".jpg", ".png")
# The origin answers 403 to every request without it
IMAGE_REFERER = "https://www.pixiv.net/"


def to_original_url(thumbnail_url: str) -> str:
    """
    Derive the extensionless original-image URL from a thumbnail URL.

    https://tc-pximg01.techorus-cdn.com/c/240x480/img-master/img/2020/02/19/00/00/39/79583564_p0_master1200.jpg
    becomes
    https://i.pximg.net/img-original/img/2020/02/19/00/00/39/79583564_p0
    """
    marker = thumbnail_url.find("/img/")
    if marker == -1:
        raise ExtensionNotFoundError(f"Not a pixiv thumbnail URL: {thumbnail_url}")

    path = thumbnail_url[marker:].replace(THUMBNAIL_SUFFIX, "")
    stem, dot, extension = path.rpartition(".")
    if dot and "/" not in extension:
        path = stem
    return ORIGINAL_IMAGE_HOST + path


def image_headers(user_agent: Optional[str] = None) -> dict[str, str]:
    """Headers every image-origin request must carry."""
    headers = {"Referer": IMAGE_REFERER}
    if user_agent:
        headers["User-Agent"] = user_agent
    return headers


class ExtensionResolver:
    """Finds the full-resolution image behind a ranking thumbnail."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        timeout_sec: float = 60.0,
    ):
        self.session = session
        self.extensions = tuple(extensions)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def resolve_full_resolution(self, thumbnail_url: str) -> aiohttp.ClientResponse:
        """
        Try each extension in order and return the first successful response.

        The returned response is open; the caller streams its body and must
        release it (``async with response:``).

        Raises:
            ExtensionNotFoundError: No extension was served by the origin.
            TransportError: A request failed at the network level.
        """
        base_url = to_original_url(thumbnail_url)
        logger.debug(f"Resolving original image for {base_url}")

        for extension in self.extensions:
            url = base_url + extension
            try:
                response = await self.session.get(url, headers=image_headers(), timeout=self.timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransportError(f"Image request failed for {url}: {e}") from e

            if 200 <= response.status < 300:
                logger.debug(f"Resolved original image: {url}")
                return response

            logger.debug(f"Tried {url}: HTTP {response.status}")
            response.release()

        raise ExtensionNotFoundError(
            f"No extension in {list(self.extensions)} found for {base_url}"
        )
