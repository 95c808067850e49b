import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest

from oxalicstats_pixels import mark_dark_pixels, pixel_field_from_array

HEALTHY = (40, 110, 40)
NECROTIC = (120, 80, 30)
BACKGROUND = (235, 235, 235)


def disk_mask(shape, center, radius):
    """All pixels within `radius` of `center` (inclusive)."""
    y, x = np.indices(shape)
    return (y - center[0]) ** 2 + (x - center[1]) ** 2 <= radius ** 2


def image_from_masks(shape, *colored_masks, background=BACKGROUND):
    img = np.empty(shape + (3,), dtype=np.uint8)
    img[:] = background
    for mask, color in colored_masks:
        img[mask] = color
    return img


def dark_field(img):
    return mark_dark_pixels(pixel_field_from_array(img))


@pytest.fixture
def ring_disk_image():
    """200x200, one disk of radius 50 at (100, 100), necrotic outside radius 35."""
    shape = (200, 200)
    outer = disk_mask(shape, (100, 100), 50)
    inner = disk_mask(shape, (100, 100), 35)
    return image_from_masks(shape, (outer, NECROTIC), (inner, HEALTHY))
