#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Acquisition

Main orchestrator for one run:
select a candidate → resolve the full-resolution image → stream it to disk
→ verify the trailer → optionally crop borders → emit an artwork descriptor.

Artworks are processed strictly one at a time. Item-level failures
(unresolvable image, corrupt download, oversized file) skip that item;
transport failures end the run early and mark it retryable; an exhausted
source ends the run. In every case the artworks collected so far are
returned.
"""

import asyncio
import dataclasses
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import aiohttp
from tqdm import tqdm

from border_cropper import BorderCropper
from candidate_sources import Candidate, CandidatePage, CandidateSource
from extension_resolver import DEFAULT_EXTENSIONS, ExtensionResolver, image_headers
from filters import DuplicateLookup, FilterCriteria, check_file_size
from format_inspector import ContainerType, VerifiedImage, verify_file
from pipeline_robustness import (
    CorruptFileError,
    ExtensionNotFoundError,
    ImageTooLargeError,
    PipelineError,
    SourceExhaustedError,
    TransportError,
)
from selection import SelectionLoop

logger = logging.getLogger("artwork_curator")

ITEM_FAILURES = (ExtensionNotFoundError, CorruptFileError, ImageTooLargeError)


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass(frozen=True)
class ArtworkDescriptor:
    """Finished artwork, ready for the gallery."""
    token: str
    title: str
    byline: str
    attribution: str
    local_uri: str
    web_uri: str

    def to_dict(self) -> dict[str, str]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtworkDescriptor":
        return cls(
            token=str(data["token"]),
            title=data.get("title", ""),
            byline=data.get("byline", ""),
            attribution=data.get("attribution", ""),
            local_uri=data.get("local_uri", ""),
            web_uri=data.get("web_uri", ""),
        )


@dataclass
class AcquisitionConfig:
    """Options for downloading and post-processing."""
    download_dir: Path = field(default_factory=lambda: Path("./artwork"))
    auto_crop: bool = False
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    download_timeout_sec: float = 120.0
    chunk_size: int = 1024 * 1024


@dataclass
class AcquisitionResult:
    """Outcome of one pipeline run."""
    artworks: list[ArtworkDescriptor] = field(default_factory=list)
    failures: list[PipelineError] = field(default_factory=list)
    exhausted: bool = False
    retryable: bool = False
    pages_fetched: int = 0
    rejections: dict[str, int] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "artworks": len(self.artworks),
            "failures": len(self.failures),
            "exhausted": self.exhausted,
            "retryable": self.retryable,
            "pages_fetched": self.pages_fetched,
            "rejections": self.rejections,
        }


# =============================================================================
# IMAGE DOWNLOADER
# =============================================================================

class ImageDownloader:
    """Streams an image response to disk and verifies what arrived."""

    def __init__(self, config: AcquisitionConfig):
        self.config = config

    async def download(self, response: aiohttp.ClientResponse, token: str) -> VerifiedImage:
        """
        Stream a response body to ``<download_dir>/<token>.part``, verify it
        and rename it with the extension of its real container.

        The partial file is removed on any failure, including cancellation.

        Raises:
            TransportError: Network or disk failure while streaming.
            CorruptFileError: Trailer mismatch or unrecognised container.
        """
        self.config.download_dir.mkdir(parents=True, exist_ok=True)
        part_path = self.config.download_dir / f"{token}.part"

        try:
            async with response:
                with open(part_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(self.config.chunk_size):
                        f.write(chunk)
            verified = verify_file(part_path)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            part_path.unlink(missing_ok=True)
            raise TransportError(f"Download of {token} failed: {e}") from e
        except BaseException:
            part_path.unlink(missing_ok=True)
            raise

        final_path = part_path.with_suffix(verified.container_type.extension)
        part_path.replace(final_path)
        logger.debug(f"Downloaded: {final_path.name} ({verified.byte_length} bytes)")
        return dataclasses.replace(verified, path=final_path)


# =============================================================================
# MAIN PIPELINE
# =============================================================================

class AcquisitionPipeline:
    """
    Acquires up to N artworks from a catalog source.

    Args:
        session: aiohttp session shared by every request of the run.
        source: Catalog source variant for the effective update mode.
        registry: Read-only duplicate / deletion lookup.
        config: Download and post-processing options.
        rng: Random generator used to shuffle pages.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        source: CandidateSource,
        registry: DuplicateLookup,
        config: Optional[AcquisitionConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.source = source
        self.registry = registry
        self.config = config or AcquisitionConfig()
        self.rng = rng
        self.resolver = ExtensionResolver(
            session,
            extensions=self.config.extensions,
            timeout_sec=self.config.download_timeout_sec,
        )
        self.downloader = ImageDownloader(self.config)
        self.cropper = BorderCropper() if self.config.auto_crop else None

    async def run(
        self,
        target_count: int,
        criteria: FilterCriteria,
        show_progress: bool = False,
    ) -> AcquisitionResult:
        """
        Run the pipeline until ``target_count`` artworks are collected or
        the run has to stop early.

        Returns:
            AcquisitionResult with the collected artworks in selection order.
        """
        selection = SelectionLoop(self.source, criteria, self.registry, rng=self.rng)
        result = AcquisitionResult()
        logger.info(f"Acquiring {target_count} artwork(s) via {type(self.source).__name__}")

        for _ in tqdm(range(target_count), desc="Artworks", unit="artwork", disable=not show_progress):
            try:
                candidate = await selection.next_match()
            except SourceExhaustedError as e:
                logger.warning(f"Unable to satisfy filters: {e}")
                result.exhausted = True
                result.failures.append(PipelineError.from_exception(e, stage="select"))
                break
            except TransportError as e:
                logger.error(f"Catalog fetch failed: {e}")
                result.retryable = True
                result.failures.append(PipelineError.from_exception(e, stage="fetch"))
                break

            try:
                artwork = await self.acquire(candidate, criteria, selection.page)
            except ITEM_FAILURES as e:
                logger.warning(f"Skipping artwork {candidate.id}: {e}")
                result.failures.append(
                    PipelineError.from_exception(e, stage="download", artwork_id=candidate.token)
                )
                continue
            except TransportError as e:
                logger.error(f"Download of {candidate.id} failed: {e}")
                result.retryable = True
                result.failures.append(
                    PipelineError.from_exception(e, stage="download", artwork_id=candidate.token)
                )
                break

            result.artworks.append(artwork)

        result.pages_fetched = selection.pages_fetched
        result.rejections = selection.rejection_summary()
        logger.info(
            f"Run finished: {len(result.artworks)}/{target_count} artworks, "
            f"{len(result.failures)} failure(s), {result.pages_fetched} page(s)"
        )
        return result

    async def acquire(
        self,
        candidate: Candidate,
        criteria: FilterCriteria,
        page: Optional[CandidatePage] = None,
    ) -> ArtworkDescriptor:
        """Download, verify and post-process one selected candidate."""
        image = self._find_existing(candidate.token)
        if image is None:
            response = await self._open_image(candidate)
            try:
                size_check = check_file_size(response.content_length, criteria)
                if not size_check.passed:
                    raise ImageTooLargeError(
                        f"Image of {candidate.id} is {response.content_length} bytes "
                        f"(limit {criteria.max_file_size_mb}MB)"
                    )
                image = await self.downloader.download(response, candidate.token)
            except BaseException:
                # Includes cancellation before the download took ownership
                response.release()
                raise

        path = image.path
        if self.cropper is not None:
            path = self._crop(path)

        return ArtworkDescriptor(
            token=candidate.token,
            title=candidate.title,
            byline=candidate.author_name,
            attribution=self._attribution(candidate, page),
            local_uri=path.resolve().as_uri(),
            web_uri=candidate.web_uri,
        )

    async def _open_image(self, candidate: Candidate) -> aiohttp.ClientResponse:
        """Open the full-resolution image response for a candidate."""
        if not candidate.image_urls:
            return await self.resolver.resolve_full_resolution(candidate.source_thumbnail_url)

        url = candidate.image_urls[0]
        try:
            response = await self.session.get(url, headers=image_headers(), timeout=self.resolver.timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Image request failed for {url}: {e}") from e

        if not 200 <= response.status < 300:
            response.release()
            raise ExtensionNotFoundError(f"Original image unavailable: HTTP {response.status} for {url}")
        return response

    def _find_existing(self, token: str) -> Optional[VerifiedImage]:
        """Reuse an earlier complete download of the same artwork."""
        for container_type in (ContainerType.PNG, ContainerType.JPEG):
            path = self.config.download_dir / f"{token}{container_type.extension}"
            if not path.exists():
                continue
            try:
                image = verify_file(path)
            except CorruptFileError:
                logger.debug(f"Discarding incomplete earlier download {path.name}")
                path.unlink()
                continue
            logger.info(f"Reusing existing download {path.name}")
            return image
        return None

    def _crop(self, path: Path) -> Path:
        """Crop borders, keeping the uncropped file if the image cannot be decoded."""
        try:
            _, path = self.cropper.process_image(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to crop {path.name}: {e}")
        return path

    @staticmethod
    def _attribution(candidate: Candidate, page: Optional[CandidatePage]) -> str:
        attribution = page.attribution if page is not None else ""
        if candidate.rank is not None:
            attribution = f"{attribution} #{candidate.rank}".strip()
        return attribution
