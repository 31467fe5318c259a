#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Gallery Manifest

The destination gallery: a JSON manifest of every artwork handed over by a
pipeline run. A run either replaces the whole gallery or appends to it.
"""

import gzip
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

from acquisition_pipeline import ArtworkDescriptor
from dedup_manager import DedupStore

logger = logging.getLogger("artwork_curator")


@dataclass
class ManifestConfig:
    """Configuration for the gallery manifest."""
    manifests_dir: Path = Path("./manifests")
    gallery_file: str = "gallery.json"
    compressed: bool = False


class ArtworkGallery:
    """Manages the gallery manifest."""

    def __init__(self, config: Optional[ManifestConfig] = None, dedup_store: Optional[DedupStore] = None):
        self.config = config or ManifestConfig()
        self.config.manifests_dir.mkdir(parents=True, exist_ok=True)
        self.dedup_store = dedup_store

    @property
    def manifest_path(self) -> Path:
        path = self.config.manifests_dir / self.config.gallery_file
        if self.config.compressed:
            path = path.with_name(path.name + ".gz")
        return path

    def load_artwork(self) -> list[ArtworkDescriptor]:
        """Load the gallery contents, newest first."""
        path = self.manifest_path
        if not path.exists():
            return []

        try:
            if self.config.compressed:
                with gzip.open(path, "rt", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                with open(path, "r") as f:
                    data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load gallery {path}: {e}")
            return []

        return [ArtworkDescriptor.from_dict(entry) for entry in data.get("artworks", [])]

    def tokens(self) -> set[str]:
        return {artwork.token for artwork in self.load_artwork()}

    def _save(self, artworks: list[ArtworkDescriptor]) -> None:
        manifest = {
            "version": "1.0",
            "updated": datetime.now().isoformat() + "Z",
            "count": len(artworks),
            "artworks": [artwork.to_dict() for artwork in artworks],
        }

        path = self.manifest_path
        temp_path = path.with_name(path.name + ".tmp")
        if self.config.compressed:
            with gzip.open(temp_path, "wt", encoding="utf-8") as f:
                json.dump(manifest, f)
        else:
            with open(temp_path, "w") as f:
                json.dump(manifest, f, indent=2)
        temp_path.replace(path)
        logger.info(f"Saved gallery ({len(artworks)} artworks) to {path}")

    def set_artwork(self, artworks: list[ArtworkDescriptor]) -> None:
        """Replace the whole gallery."""
        self._save(list(artworks))

    def add_artwork(self, artworks: list[ArtworkDescriptor]) -> int:
        """
        Append artworks, skipping tokens already in the gallery.

        Returns:
            Number of artworks added.
        """
        existing = self.load_artwork()
        existing_tokens = {a.token for a in existing}
        new_entries = [a for a in artworks if a.token not in existing_tokens]

        if not new_entries:
            logger.info("No new artworks to add to gallery")
            return 0

        self._save(new_entries + existing)
        return len(new_entries)

    def submit(self, artworks: list[ArtworkDescriptor], clear_existing: bool) -> int:
        """Hand a run's artworks to the gallery, replacing or appending."""
        if clear_existing:
            self.set_artwork(artworks)
            return len(artworks)
        return self.add_artwork(artworks)

    def delete_artwork(self, token: str) -> bool:
        """
        Remove an artwork, delete its local file and remember the deletion.

        Returns:
            True if the token was in the gallery.
        """
        artworks = self.load_artwork()
        remaining = [a for a in artworks if a.token != token]
        if len(remaining) == len(artworks):
            logger.warning(f"Artwork {token} not in gallery")
            return False

        for artwork in artworks:
            if artwork.token == token:
                local_path = Path(url2pathname(urlparse(artwork.local_uri).path))
                if local_path.exists():
                    local_path.unlink()
                    logger.debug(f"Deleted {local_path}")

        self._save(remaining)
        if self.dedup_store is not None and token.isdigit():
            self.dedup_store.record_deletion(int(token))
        return True
