#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Job Runner

Command line entry point. ``run`` performs one scheduled acquisition:
take the run lock, work out the effective update mode, run the pipeline
with linear backoff on transport failures and hand the artworks to the
gallery. ``delete`` removes an artwork from the gallery and remembers that
it must never come back.

Usage:
    artwork-curator run --count 3 --mode weekly
    artwork-curator run --clear --no-progress
    artwork-curator delete 84512345
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiohttp

from access_token import AccessTokenManager, EffectiveMode, resolve_effective_mode
from acquisition_pipeline import AcquisitionConfig, AcquisitionPipeline, AcquisitionResult, ArtworkDescriptor
from candidate_sources import AUTH_MODES, RANKING_MODES, build_source
from config_loader import ConfigLoader, load_config
from dedup_manager import DedupStore, create_dedup_system
from manifest_manager import ArtworkGallery, ManifestConfig
from network_bypass import DnsOverHttpsResolver
from pipeline_robustness import RunLock, run_with_linear_backoff

logger = logging.getLogger("artwork_curator")


def setup_logging(debug: bool = False, log_dir: Path = Path("./logs")) -> logging.Logger:
    """Configure logging with timestamps and proper formatting."""
    logger = logging.getLogger("artwork_curator")
    logger.setLevel(logging.DEBUG)
    if logger.handlers:
        return logger

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)

    # File handler
    log_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    file_handler = logging.FileHandler(log_dir / f"curation_{timestamp}.log")
    file_handler.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


# =============================================================================
# RUN
# =============================================================================

class CurationRun:
    """
    One scheduled run against the configured catalog and gallery.

    Artworks are submitted to the gallery after every attempt, so a retry
    only has to fetch what is still missing and never picks the same
    artwork again.
    """

    def __init__(
        self,
        config: ConfigLoader,
        mode: Optional[str] = None,
        count: Optional[int] = None,
        clear_existing: Optional[bool] = None,
        show_progress: Optional[bool] = None,
    ):
        self.config = config
        self.source_config = config.get_source_config()
        self.storage_config = config.get_storage_config()
        self.auth_config = config.get_auth_config()
        self.retry_config = config.get_retry_config()
        run_config = config.get_run_config()
        self.run_config = run_config

        self.mode = mode or self.source_config.mode
        self.count = count if count is not None else run_config.count
        self.clear_existing = run_config.clear_existing if clear_existing is None else clear_existing
        self.show_progress = run_config.show_progress if show_progress is None else show_progress
        self.criteria = config.get_filter_criteria()

        self.dedup_store = DedupStore(self.storage_config.dedup_index_path)
        self.gallery = ArtworkGallery(
            ManifestConfig(
                manifests_dir=self.storage_config.manifests_dir,
                gallery_file=self.storage_config.gallery_file,
            ),
            dedup_store=self.dedup_store,
        )
        self.collected: list[ArtworkDescriptor] = []

    async def execute(self) -> Optional[AcquisitionResult]:
        """
        Run the pipeline with retries.

        Returns:
            Combined result of every attempt, or None when the auth failure
            policy aborted the run.
        """
        resolver = DnsOverHttpsResolver() if self.source_config.network_bypass else None
        connector = None
        if resolver is not None:
            logger.info(f"Network bypass enabled, resolving hosts through {resolver.endpoint}")
            connector = aiohttp.TCPConnector(resolver=resolver)
        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                return await self._execute(session)
        finally:
            # The connector only closes resolvers it created itself
            if resolver is not None:
                await resolver.close()

    async def _execute(self, session: aiohttp.ClientSession) -> Optional[AcquisitionResult]:
        token_manager = AccessTokenManager(
            session,
            self.auth_config.token_cache_path,
            client_id=self.auth_config.client_id,
            client_secret=self.auth_config.client_secret,
            refresh_token=self.auth_config.refresh_token,
        )
        effective = await resolve_effective_mode(self.mode, token_manager, self.auth_config.failure_policy)
        if effective is None:
            return None

        target = effective.target_override or self.count
        failures = []

        async def attempt() -> AcquisitionResult:
            result = await self._attempt(session, effective, target - len(self.collected))
            failures.extend(result.failures)
            return result

        result = await run_with_linear_backoff(
            attempt,
            should_retry=lambda r: r.retryable and len(self.collected) < target,
            max_attempts=self.retry_config.max_attempts,
            delay_increment_sec=self.retry_config.delay_increment_sec,
        )

        result.artworks = list(self.collected)
        result.failures = failures
        return result

    async def _attempt(
        self,
        session: aiohttp.ClientSession,
        effective: EffectiveMode,
        remaining: int,
    ) -> AcquisitionResult:
        _, checker = create_dedup_system(self.gallery, self.dedup_store)
        debug_dir = self.storage_config.download_dir / "debug" if self.source_config.debug_dump else None
        source = build_source(
            session,
            effective.mode,
            access_token=effective.access_token,
            user_id=self.source_config.user_id,
            artist_id=self.source_config.artist_id,
            tag=self.source_config.tag,
            page_cap=self.source_config.page_cap,
            debug_dump_dir=debug_dir,
            timeout_sec=self.source_config.timeout_sec,
        )
        pipeline = AcquisitionPipeline(
            session,
            source,
            checker,
            AcquisitionConfig(
                download_dir=self.storage_config.download_dir,
                auto_crop=self.storage_config.auto_crop,
                extensions=self.source_config.extensions,
                download_timeout_sec=self.run_config.download_timeout_sec,
            ),
        )
        result = await pipeline.run(remaining, self.criteria, show_progress=self.show_progress)

        if result.artworks:
            self.collected.extend(result.artworks)
            self.gallery.submit(self.collected, clear_existing=self.clear_existing)
        return result


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    # Options accepted after every subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    common.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser = argparse.ArgumentParser(
        description="Artwork Curator - pixiv artwork acquisition for a local gallery"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", parents=[common], help="Acquire new artworks")
    run_parser.add_argument(
        "--count", "-n",
        type=int,
        default=None,
        help="Number of artworks to download (default: from config.yaml)"
    )
    run_parser.add_argument(
        "--mode",
        choices=AUTH_MODES + RANKING_MODES,
        default=None,
        help="Update mode (default: from config.yaml)"
    )
    run_parser.add_argument(
        "--clear",
        action="store_true",
        default=None,
        help="Replace the whole gallery instead of appending"
    )
    run_parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Hide the progress bar"
    )
    run_parser.add_argument(
        "--force",
        action="store_true",
        help="Force run even if another instance appears to be running"
    )

    delete_parser = subparsers.add_parser("delete", parents=[common], help="Delete an artwork and never fetch it again")
    delete_parser.add_argument("token", help="Artwork token (pixiv id)")

    return parser


def _print_summary(result: AcquisitionResult) -> None:
    print(f"\n{'=' * 50}")
    print(f"Artworks acquired: {len(result.artworks)}")
    for artwork in result.artworks:
        print(f"  - {artwork.token}: {artwork.title} by {artwork.byline} ({artwork.attribution})")
    if result.failures:
        print(f"Failures: {len(result.failures)}")
        for failure in result.failures:
            print(f"  - [{failure.stage}] {failure.message}")
    if result.rejections:
        rejected = ", ".join(f"{reason}={count}" for reason, count in sorted(result.rejections.items()))
        print(f"Rejected on last attempt: {rejected}")
    if result.exhausted:
        print("⚠️ Source exhausted before the target count was reached")
    print(f"{'=' * 50}")


def run_command(args: argparse.Namespace, config: ConfigLoader) -> int:
    storage = config.get_storage_config()

    # Handle --force flag by removing stale lock file
    if args.force and storage.lock_file.exists():
        storage.lock_file.unlink()
        logger.info("🔓 Removed stale lock file (--force)")

    curation = CurationRun(
        config,
        mode=args.mode,
        count=args.count,
        clear_existing=args.clear,
        show_progress=False if args.no_progress else None,
    )

    lock = RunLock(storage.lock_file)
    if not lock.acquire():
        return 1
    try:
        result = asyncio.run(curation.execute())
    finally:
        lock.release()

    if result is None:
        print("\n⚠️ Authentication failed, nothing downloaded this run.")
        return 0

    _print_summary(result)
    return 2 if result.retryable and not result.artworks else 0


def delete_command(args: argparse.Namespace, config: ConfigLoader) -> int:
    storage = config.get_storage_config()
    gallery = ArtworkGallery(
        ManifestConfig(manifests_dir=storage.manifests_dir, gallery_file=storage.gallery_file),
        dedup_store=DedupStore(storage.dedup_index_path),
    )
    if gallery.delete_artwork(args.token):
        print(f"Deleted artwork {args.token}")
        return 0
    print(f"Artwork {args.token} is not in the gallery")
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug)
    if args.debug:
        logger.debug("Debug logging enabled")

    config = load_config(args.config)
    if args.command == "delete":
        return delete_command(args, config)
    return run_command(args, config)


if __name__ == "__main__":
    sys.exit(main())
