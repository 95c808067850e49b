#%% ################################################################################
# Pixel buffer of one assay photograph, plus the per-pixel dark/necrotic flags

import logging
from dataclasses import dataclass, replace

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from oxalicstats_config import DARK_THRESHOLD, InputError

logger = logging.getLogger(__name__)

NECROTIC_COLOR = (255, 100, 0)     # orange
HEALTHY_COLOR = (0, 200, 0)        # green
DISK_BORDER_COLOR = (0, 200, 0)
OTHER_BORDER_COLOR = (0, 0, 0)


#%% ################################################################################
# PixelField

@dataclass(frozen=True, eq=False)
class PixelField:
    """
    Decoded RGB image with the flags set by the pipeline stages.

    rgb is never written to after decoding; stages that set flags return a
    new PixelField sharing the same rgb array.
    """
    rgb: np.ndarray          # (H, W, 3) uint8
    is_dark: np.ndarray      # (H, W) bool
    is_necrotic: np.ndarray  # (H, W) bool

    @property
    def height(self):
        return self.rgb.shape[0]

    @property
    def width(self):
        return self.rgb.shape[1]

    @property
    def shape(self):
        return self.rgb.shape[:2]


def pixel_field_from_array(array):
    """
    Build a PixelField from a decoded image.

    Accepts (H, W) grey, (H, W, 3) RGB or (H, W, 4) RGBA data (alpha is
    ignored), as a numpy array or as nested lists of equal length.
    """

    try:
        img = np.asarray(array)
    except ValueError as err:
        # ragged nested lists
        raise InputError(f"Pixel buffer is not rectangular: {err}") from err

    if img.dtype == object:
        raise InputError("Pixel buffer is not rectangular.")
    if img.ndim not in (2, 3) or img.size == 0:
        raise InputError(f"Expected a non-empty (H, W[, C]) pixel buffer, got shape {img.shape}.")

    # in case the image doesn't have 3 dimensions, expand to three
    img = np.atleast_3d(img)
    if img.shape[2] == 1:
        img = np.repeat(img, 3, axis=2)
    elif img.shape[2] == 4:
        img = img[:, :, :3]
    elif img.shape[2] != 3:
        raise InputError(f"Expected 1, 3 or 4 channels, got {img.shape[2]}.")

    if not np.issubdtype(img.dtype, np.number) and img.dtype != bool:
        raise InputError(f"Pixel values must be numeric, got dtype {img.dtype}.")
    if img.dtype != np.uint8:
        if np.any(~np.isfinite(img)) or img.min() < 0 or img.max() > 255:
            raise InputError("Pixel values must be within 0-255.")
        img = img.astype(np.uint8)

    rgb = np.array(img, dtype=np.uint8, copy=True)
    rgb.setflags(write=False)
    empty = np.zeros(rgb.shape[:2], dtype=bool)

    return PixelField(rgb=rgb, is_dark=empty, is_necrotic=empty.copy())


def load_pixel_field(file_path):
    """Decode an image file with Pillow."""

    logger.info(f"Loading {file_path}")
    try:
        with Image.open(file_path) as img:
            img_rgb = np.array(img.convert('RGB'))
    except (UnidentifiedImageError, OSError) as err:
        raise InputError(f"Could not decode image {file_path}: {err}") from err

    return pixel_field_from_array(img_rgb)


#%% ################################################################################
# Flags

def dark_mask(rgb, threshold=DARK_THRESHOLD):
    """A pixel is dark iff all three channels are below threshold."""
    return np.all(rgb < threshold, axis=2)


def mark_dark_pixels(field, threshold=DARK_THRESHOLD):
    """
    Return a new field with is_dark set. This is the only place the dark
    predicate is evaluated; later stages read the flag.
    """
    is_dark = dark_mask(field.rgb, threshold)
    logger.debug(f"{int(is_dark.sum())} dark pixels (threshold {threshold})")
    return replace(field, is_dark=is_dark)


def with_necrotic(field, is_necrotic):
    if is_necrotic.shape != field.shape:
        raise ValueError(f"Necrotic mask shape {is_necrotic.shape} does not match field {field.shape}.")
    return replace(field, is_necrotic=is_necrotic.astype(bool))


#%% ################################################################################
# Rendering helpers (the overlay shown to the user is drawn elsewhere)

def render_overlay(field, blobs=None, border_width=2):
    """
    Colour the labelled pixels: necrotic orange, other dark pixels green.
    When blobs are given, draw a border just outside every bounding box,
    green for leaf disks and black for everything else.
    """

    overlay = field.rgb.copy()
    overlay[field.is_dark] = HEALTHY_COLOR
    overlay[field.is_necrotic] = NECROTIC_COLOR

    if blobs is None:
        return overlay

    for blob in blobs:
        color = DISK_BORDER_COLOR if blob.is_leaf_disk else OTHER_BORDER_COLOR
        # cv2 clips rectangles at the image edge
        for offset in range(1, border_width + 1):
            cv2.rectangle(overlay,
                          (int(blob.left) - offset, int(blob.top) - offset),
                          (int(blob.right) + offset, int(blob.bottom) + offset),
                          color, 1)

    return overlay


def save_overlay(overlay, file_path):
    Image.fromarray(overlay).save(file_path)
    logger.info(f"Saved overlay to {file_path}")
