#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Byte Format Inspector

Identifies downloaded images by their header magic bytes and checks the
container trailer. Image hosts frequently cut large bodies short without
any transport error (the header survives, the end marker does not), so the
trailer is the only reliable way to detect a truncated download.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pipeline_robustness import CorruptFileError

logger = logging.getLogger("artwork_curator")

PNG_HEADER = b"\x89\x50"
PNG_TRAILER = b"IEND"  # 49 45 4E 44, followed by the 4-byte chunk CRC
PNG_TRAILER_OFFSET = 8
JPEG_HEADER = b"\xff\xd8"
JPEG_TRAILER = b"\xff\xd9"


class ContainerType(Enum):
    """Image container formats recognised by the inspector."""
    PNG = "png"
    JPEG = "jpeg"
    UNKNOWN = "unknown"

    @property
    def extension(self) -> str:
        return {"png": ".png", "jpeg": ".jpg"}.get(self.value, ".bin")


@dataclass(frozen=True)
class VerifiedImage:
    """An image file whose trailer matched its header."""
    path: Path
    container_type: ContainerType
    byte_length: int


def identify(data: bytes) -> ContainerType:
    """Classify a byte buffer by its first two bytes."""
    head = data[:2]
    if head == PNG_HEADER:
        return ContainerType.PNG
    if head == JPEG_HEADER:
        return ContainerType.JPEG
    return ContainerType.UNKNOWN


def verify_trailer(data: bytes, container_type: ContainerType) -> None:
    """
    Check that a buffer ends with the trailer its container requires.

    Args:
        data: The complete file contents, or at least its last 8 bytes.
        container_type: Result of identify() for the same file.

    Raises:
        CorruptFileError: A recognised container is missing its end marker.
    """
    if container_type is ContainerType.PNG:
        if len(data) < PNG_TRAILER_OFFSET:
            raise CorruptFileError("Corrupt PNG: stream shorter than IEND chunk")
        start = len(data) - PNG_TRAILER_OFFSET
        if data[start:start + len(PNG_TRAILER)] != PNG_TRAILER:
            raise CorruptFileError("Corrupt PNG: IEND chunk missing")
    elif container_type is ContainerType.JPEG:
        if data[-len(JPEG_TRAILER):] != JPEG_TRAILER:
            raise CorruptFileError("Corrupt JPEG: EOI marker missing")


def verify_file(path: Path) -> VerifiedImage:
    """
    Verify a file on disk by reading only its header and trailer.

    Returns:
        VerifiedImage for PNG/JPEG files whose trailer matches.

    Raises:
        CorruptFileError: Truncated PNG/JPEG, or a file that is not an image
            container the pipeline accepts.
    """
    size = path.stat().st_size
    with open(path, "rb") as f:
        header = f.read(2)
        f.seek(max(0, size - PNG_TRAILER_OFFSET))
        tail = f.read()

    container_type = identify(header)
    if container_type is ContainerType.UNKNOWN:
        raise CorruptFileError(f"Unrecognised image header {header.hex()} in {path.name}")

    if size < len(header) + len(JPEG_TRAILER):
        raise CorruptFileError(f"Image too short to be complete: {size} bytes")

    # The tail keeps its true position relative to end-of-stream
    verify_trailer(tail, container_type)
    logger.debug(f"Verified {container_type.name} {path.name} ({size} bytes)")
    return VerifiedImage(path=path, container_type=container_type, byte_length=size)
