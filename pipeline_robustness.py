#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Robustness & Recovery Module

Error taxonomy and run-level safety for the acquisition pipeline:
- Error categorization (fatal / recoverable / warning)
- Exception hierarchy shared by every pipeline stage
- Structured error records collected per run
- Lock file mechanism guaranteeing a single active run
- Whole-run retry with linear backoff
"""

import asyncio
import fcntl
import logging
import os
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, IO, Optional, TypeVar

logger = logging.getLogger("artwork_curator")

T = TypeVar("T")

# =============================================================================
# ERROR CATEGORIES
# =============================================================================

class ErrorCategory(Enum):
    """Classification of errors by severity and recoverability."""
    FATAL = "fatal"           # Stop the run, keep what was collected
    RECOVERABLE = "recoverable"  # Skip the item or retry the whole run later
    WARNING = "warning"       # Non-critical, log and continue


class AcquisitionError(Exception):
    """Base class for every failure raised inside the acquisition pipeline."""

    category: ErrorCategory = ErrorCategory.RECOVERABLE
    retryable: bool = False


class TransportError(AcquisitionError):
    """Network or IO failure. The whole run may be retried later."""

    retryable = True

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CorruptFileError(AcquisitionError):
    """Downloaded image is truncated: its trailer does not match the header."""


class ExtensionNotFoundError(AcquisitionError):
    """No candidate file extension resolved to a full-resolution image."""


class ImageTooLargeError(AcquisitionError):
    """Resolved image exceeds the configured file-size limit."""


class FilterExhausted(AcquisitionError):
    """A page yielded no matching candidate. Absorbed by pagination."""

    category = ErrorCategory.WARNING


class SourceExhaustedError(AcquisitionError):
    """The catalog has no further pages to offer for this run."""

    category = ErrorCategory.FATAL


class AccessTokenError(AcquisitionError):
    """Access token could not be acquired or refreshed."""

    category = ErrorCategory.FATAL


@dataclass
class PipelineError:
    """Structured error representation."""
    category: ErrorCategory
    message: str
    stage: str
    artwork_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    traceback_str: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "stage": self.stage,
            "artwork_id": self.artwork_id,
            "timestamp": self.timestamp,
            "traceback": self.traceback_str
        }

    @classmethod
    def from_exception(
        cls,
        e: Exception,
        stage: str,
        category: Optional[ErrorCategory] = None,
        artwork_id: Optional[str] = None
    ) -> "PipelineError":
        if category is None:
            category = getattr(e, "category", ErrorCategory.RECOVERABLE)
        return cls(
            category=category,
            message=f"{type(e).__name__}: {e}",
            stage=stage,
            artwork_id=artwork_id,
            traceback_str=traceback.format_exc()
        )


# =============================================================================
# RUN LOCK
# =============================================================================

class RunLock:
    """
    Exclusive lock guaranteeing that at most one pipeline run is active.

    Concurrent runs would race on the access token refresh and on the
    gallery duplicate checks, so the job runner refuses to start while
    another process holds the lock.
    """

    def __init__(self, lock_file: Path = Path("./pipeline_state/.curator.lock")):
        self.lock_file = lock_file
        self.lock_fd: Optional[IO[str]] = None
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

    def acquire(self) -> bool:
        """
        Acquire the lock without blocking.

        Returns:
            True if lock acquired, False if another instance is running.
        """
        try:
            self.lock_fd = open(self.lock_file, "w")
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

            # Write PID for debugging
            self.lock_fd.write(f"{os.getpid()}\n{datetime.now().isoformat()}\n")
            self.lock_fd.flush()

            logger.info(f"🔒 Run lock acquired (PID: {os.getpid()})")
            return True

        except OSError:
            if self.lock_fd:
                self.lock_fd.close()
                self.lock_fd = None
            logger.error(f"❌ Another curator run holds {self.lock_file}")
            return False

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if self.lock_fd:
            try:
                fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
                self.lock_fd.close()
            except OSError as e:
                logger.warning(f"Error releasing lock: {e}")
            finally:
                self.lock_fd = None

        try:
            if self.lock_file.exists():
                self.lock_file.unlink()
        except OSError as e:
            logger.warning(f"Error removing lock file: {e}")

    def __enter__(self) -> "RunLock":
        if not self.acquire():
            raise RuntimeError(f"Another curator run is active ({self.lock_file})")
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


# =============================================================================
# RUN-LEVEL RETRY
# =============================================================================

async def run_with_linear_backoff(
    run: Callable[[], Awaitable[T]],
    should_retry: Callable[[T], bool],
    max_attempts: int = 3,
    delay_increment_sec: float = 300.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Re-run a whole pipeline invocation while it reports a retryable failure.

    The delay grows by a fixed increment after every failed attempt
    (increment, 2 * increment, ...).

    Args:
        run: Zero-argument coroutine factory performing one run.
        should_retry: Inspects a run's result and says whether to try again.
        max_attempts: Total attempts including the first one.
        delay_increment_sec: Linear backoff step in seconds.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The result of the last attempt.
    """
    attempts = max(1, max_attempts)
    result = await run()
    for attempt in range(1, attempts):
        if not should_retry(result):
            break
        delay = delay_increment_sec * attempt
        logger.warning(
            f"Run attempt {attempt}/{attempts} needs a retry. "
            f"Retrying in {delay:.0f}s..."
        )
        await sleep(delay)
        result = await run()
    return result
