#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Border Cropping

Detects a uniform-colour margin around artwork content and crops it away.
The margin colour is taken from the top-left pixel.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import Image

logger = logging.getLogger("artwork_curator")


class BorderCropper:
    """Detects and crops uniform borders from artwork images."""

    SAMPLE_STEP = 3  # Only every 3rd row/column is inspected
    MAX_DISTANCE = 510.0  # sqrt(4 * 255^2): ARGB black-transparent to white-opaque
    TOLERANCE = 0.10  # Normalised distance above which a pixel counts as content

    def __init__(self, sample_step: int = SAMPLE_STEP, tolerance: float = TOLERANCE):
        self.sample_step = sample_step
        self.tolerance = tolerance

    def detect_content_box(self, img: Image.Image) -> Optional[Tuple[int, int, int, int]]:
        """
        Find the bounding box of pixels that differ from the border colour.

        Args:
            img: PIL Image to inspect

        Returns:
            (left, top, right, bottom) crop box, or None when cropping would
            not change anything worth re-encoding
        """
        # Sample before widening to float, full-size float64 costs 32 bytes per pixel
        pixels = np.asarray(img if img.mode in ("RGB", "RGBA") else img.convert("RGBA"))
        height, width = pixels.shape[:2]
        base = pixels[0, 0].astype(np.float64)

        step = self.sample_step
        samples = pixels[::step, ::step].astype(np.float64)
        del pixels
        samples -= base
        np.square(samples, out=samples)
        distance = np.sqrt(samples.sum(axis=2)) / self.MAX_DISTANCE
        ys, xs = np.nonzero(distance > self.tolerance)

        if len(xs) == 0:
            logger.debug("No content found above tolerance, skipping crop")
            return None

        top_x, top_y = int(xs.min()) * step, int(ys.min()) * step
        bottom_x, bottom_y = int(xs.max()) * step, int(ys.max()) * step

        # Sampling can miss the last row/column, so within one step is already tight
        if (top_x == 0 and top_y == 0
                and bottom_x >= width - step and bottom_y >= height - step):
            logger.debug("Image already tight to content, skipping crop")
            return None

        return top_x, top_y, bottom_x + 1, bottom_y + 1

    def process_image(self, filepath: Path) -> Tuple[bool, Path]:
        """
        Crop uniform borders from an image file, re-encoding losslessly.

        Args:
            filepath: Path to a verified image file

        Returns:
            Tuple of (was_cropped, new_filepath)
            - was_cropped: True if a border was removed
            - new_filepath: Path to the processed image; cropped images are
              always written as PNG, so a JPEG input changes suffix
        """
        with Image.open(filepath) as img:
            box = self.detect_content_box(img)
            if box is None:
                return False, filepath
            cropped_img = img.crop(box)

        output_path = filepath.with_suffix(".png")
        cropped_img.save(output_path, "PNG")
        if output_path != filepath:
            filepath.unlink()

        left, top, right, bottom = box
        logger.info(f"Cropped {filepath.name} to {right - left}x{bottom - top} at ({left}, {top})")
        return True, output_path
