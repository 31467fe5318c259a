#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Deduplication Manager

Tracks two kinds of artwork ids so the selection loop never picks an
artwork twice:
1. Artworks already present in the destination gallery
2. Artworks the user explicitly deleted from the gallery

The acquisition pipeline only ever reads this index. Deletions are recorded
by the gallery (see manifest_manager.ArtworkGallery.delete_artwork).
"""

import gzip
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Set, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from manifest_manager import ArtworkGallery

logger = logging.getLogger("artwork_curator")


# =============================================================================
# DUPLICATE INDEX
# =============================================================================

@dataclass
class DuplicateIndex:
    """
    Centralized index for all deduplication data.

    Tracks:
    - gallery_ids: Artwork ids currently in the destination gallery
    - deleted_ids: Artwork ids the user removed and never wants back
    """
    gallery_ids: Set[int] = field(default_factory=set)
    deleted_ids: Set[int] = field(default_factory=set)

    # Metadata
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    version: str = "1.0"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON storage. Gallery ids are not stored."""
        return {
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": datetime.now().isoformat(),
            "deleted_ids": sorted(self.deleted_ids),
            "stats": {
                "deleted_count": len(self.deleted_ids),
            }
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DuplicateIndex":
        """Deserialize from dictionary."""
        return cls(
            deleted_ids={int(i) for i in data.get("deleted_ids", [])},
            created_at=data.get("created_at", datetime.now().isoformat()),
            version=data.get("version", "1.0"),
        )

    def add_gallery_ids(self, ids: Iterable[int]) -> None:
        self.gallery_ids.update(ids)

    def add_deleted_id(self, artwork_id: int) -> None:
        self.deleted_ids.add(artwork_id)
        self.gallery_ids.discard(artwork_id)

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the index."""
        return {
            "gallery": len(self.gallery_ids),
            "deleted": len(self.deleted_ids),
        }


# =============================================================================
# DUPLICATE CHECKER
# =============================================================================

class DuplicateChecker:
    """Read-only duplicate checks used by the filter chain."""

    def __init__(self, index: DuplicateIndex):
        self.index = index

    def is_duplicate(self, artwork_id: int) -> bool:
        """Check if the artwork is already in the gallery."""
        return artwork_id in self.index.gallery_ids

    def was_deleted(self, artwork_id: int) -> bool:
        """Check if the user deleted this artwork before."""
        return artwork_id in self.index.deleted_ids


# =============================================================================
# PERSISTENCE
# =============================================================================

class DedupStore:
    """Persists the deleted-id part of the index as gzip-compressed JSON."""

    def __init__(self, index_path: Path = Path("./manifests/dedup_index.json.gz")):
        self.index_path = index_path

    def load(self) -> DuplicateIndex:
        """Load the index, starting fresh when missing or unreadable."""
        if not self.index_path.exists():
            logger.debug("No dedup index found, starting fresh")
            return DuplicateIndex()

        try:
            with gzip.open(self.index_path, "rt", encoding="utf-8") as f:
                index = DuplicateIndex.from_dict(json.load(f))
            logger.info(f"Loaded dedup index ({len(index.deleted_ids)} deleted ids)")
            return index
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load dedup index {self.index_path}: {e}")
            return DuplicateIndex()

    def save(self, index: DuplicateIndex) -> None:
        """Write the index atomically."""
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.index_path.with_suffix(".tmp")
        with gzip.open(temp_path, "wt", encoding="utf-8") as f:
            json.dump(index.to_dict(), f)
        temp_path.replace(self.index_path)
        logger.debug(f"Saved dedup index to {self.index_path}")

    def record_deletion(self, artwork_id: int) -> None:
        """Remember that the user deleted an artwork."""
        index = self.load()
        index.add_deleted_id(artwork_id)
        self.save(index)
        logger.info(f"Recorded deletion of artwork {artwork_id}")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def create_dedup_system(
    gallery: Optional["ArtworkGallery"] = None,
    store: Optional[DedupStore] = None,
) -> Tuple[DuplicateIndex, DuplicateChecker]:
    """
    Factory function to create the complete dedup system.

    Args:
        gallery: Destination gallery whose tokens count as duplicates.
        store: Persistence for deleted ids.

    Returns:
        Tuple of (DuplicateIndex, DuplicateChecker)
    """
    index = store.load() if store else DuplicateIndex()
    if gallery is not None:
        index.add_gallery_ids(int(token) for token in gallery.tokens() if token.isdigit())

    stats = index.get_stats()
    logger.info(f"Dedup index ready: {stats['gallery']} in gallery, {stats['deleted']} deleted")
    return index, DuplicateChecker(index)
