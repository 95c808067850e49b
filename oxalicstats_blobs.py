#%% ################################################################################
# Segmentation: dark blobs -> leaf disks -> rows of disks

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Optional

import numpy as np
from skimage.measure import label, regionprops

from oxalicstats_config import (
    MIN_DISK_HEIGHT,
    PIXEL_COUNT_TOLERANCE,
    SQUARENESS_TOLERANCE,
    SegmentationDegenerate,
)

logger = logging.getLogger(__name__)


#%% ################################################################################
# Types

def _empty_coordinates():
    return np.zeros((0, 2), dtype=int)


@dataclass(eq=False)
class Blob:
    """
    Connected region of dark pixels. Bounds are inclusive pixel indices,
    coordinates is an (N, 2) array of (row, col).
    """
    top: int
    left: int
    bottom: int
    right: int
    coordinates: np.ndarray
    is_leaf_disk: bool = False
    roundness: Optional[float] = None

    @property
    def height(self):
        return self.bottom - self.top

    @property
    def width(self):
        return self.right - self.left

    @property
    def pixel_count(self):
        return len(self.coordinates)

    @property
    def center(self):
        return ((self.top + self.bottom) / 2, (self.left + self.right) / 2)

    def local_mask(self, margin=0):
        """Boolean mask of the blob within its bounding box (plus margin)."""
        mask = np.zeros((self.bottom - self.top + 1 + 2 * margin,
                         self.right - self.left + 1 + 2 * margin), dtype=bool)
        mask[self.coordinates[:, 0] - self.top + margin,
             self.coordinates[:, 1] - self.left + margin] = True
        return mask


@dataclass(eq=False)
class Disk(Blob):
    """A blob classified as a leaf disk, plus what later stages measure on it."""
    necrotic_coordinates: np.ndarray = field(default_factory=_empty_coordinates)
    necrotic_portion: float = 0.0
    necrotic_inner_radius: Optional[int] = None
    refine_status: Optional[str] = None
    transition_index: Optional[int] = None
    sorted_brightness: Optional[np.ndarray] = None

    @property
    def pixel_radius(self):
        return (self.height + self.width) / 4

    @property
    def pixel_diameter(self):
        return (self.height + self.width) / 2

    @classmethod
    def from_blob(cls, blob, **changes):
        values = {f.name: getattr(blob, f.name) for f in fields(Blob)}
        values.update(changes)
        return cls(**values)


def blob_from_coordinates(coordinates):
    coordinates = np.asarray(coordinates, dtype=int).reshape(-1, 2)
    if len(coordinates) == 0:
        raise ValueError("Cannot build a blob without coordinates.")
    top, left = coordinates.min(axis=0)
    bottom, right = coordinates.max(axis=0)
    return Blob(top=int(top), left=int(left), bottom=int(bottom), right=int(right),
                coordinates=coordinates)


#%% ################################################################################
# Blob extraction

def _label_components(is_dark):
    """
    Connected components (8-connectivity), returned in the order a raster
    scan first hits them.
    """

    img_lbl = label(is_dark, connectivity=2)
    lbl_flat = img_lbl.ravel()

    # stable sort keeps raster order of pixels within each label
    order = np.argsort(lbl_flat, kind='stable')
    lbl_sorted = lbl_flat[order]
    lbls, starts = np.unique(lbl_sorted, return_index=True)

    components = []
    for lbl, start, end in zip(lbls, starts, list(starts[1:]) + [len(order)]):
        if lbl == 0:
            continue
        flat_idx = order[start:end]
        coords = np.column_stack(np.unravel_index(flat_idx, is_dark.shape))
        components.append((int(flat_idx[0]), coords))

    components.sort(key=lambda c: c[0])
    return [coords for _, coords in components]


def _scanline_fill(is_dark, claimed, seed_row, seed_col, max_fill_pixels=None):
    """
    Directional fill from the seed: for each row downwards, claim dark pixels
    rightwards from the seed column and then leftwards from the column before
    it, and stop at the first row without any newly claimed pixel.

    Exact for convex regions such as leaf disks; concave regions (writing,
    smears) can be split over several blobs and are rejoined by the merge.
    """

    height, width = is_dark.shape
    coords = []

    for row in range(seed_row, height):
        n_claimed = 0

        col = seed_col
        while col < width and is_dark[row, col] and not claimed[row, col]:
            claimed[row, col] = True
            coords.append((row, col))
            n_claimed += 1
            col += 1

        col = seed_col - 1
        while col >= 0 and is_dark[row, col] and not claimed[row, col]:
            claimed[row, col] = True
            coords.append((row, col))
            n_claimed += 1
            col -= 1

        if n_claimed == 0:
            break
        if max_fill_pixels is not None and len(coords) >= max_fill_pixels:
            logger.warning(f"Fill from ({seed_row}, {seed_col}) stopped at {len(coords)} pixels.")
            break

    return np.array(coords, dtype=int).reshape(-1, 2)


def _scanline_components(is_dark, max_fill_pixels=None):
    claimed = np.zeros(is_dark.shape, dtype=bool)
    components = []

    # raster scan, only visiting dark pixels
    for flat_idx in np.flatnonzero(is_dark):
        row, col = divmod(int(flat_idx), is_dark.shape[1])
        if claimed[row, col]:
            continue
        components.append(_scanline_fill(is_dark, claimed, row, col, max_fill_pixels))

    return components


def find_dark_blobs(field, method='label', max_fill_pixels=None):
    """
    Split the dark pixels of field into disjoint blobs, merging blobs whose
    bounding boxes touch or overlap.

    field.is_dark must already be set (see mark_dark_pixels).
    """

    if method == 'label':
        components = _label_components(field.is_dark)
    elif method == 'scanline':
        components = _scanline_components(field.is_dark, max_fill_pixels)
    else:
        raise ValueError(f"Invalid method: {method}. Choose from 'label' or 'scanline'.")

    blobs = [blob_from_coordinates(coords) for coords in components]
    consolidated = consolidate_blobs(blobs)

    logger.info(f"Found {len(blobs)} dark regions, {len(consolidated)} blobs after merging")
    return consolidated


#%% ################################################################################
# Merging

def ranges_overlap(start1, end1, start2, end2):
    return start1 <= end2 and start2 <= end1


def blobs_touch(blob1, blob2):
    # widen blob1 by one pixel so that adjacent boxes count as touching
    vertical_overlap = ranges_overlap(blob1.top - 1, blob1.bottom + 1, blob2.top, blob2.bottom)
    horizontal_overlap = ranges_overlap(blob1.left - 1, blob1.right + 1, blob2.left, blob2.right)
    return vertical_overlap and horizontal_overlap


def merge_blobs(blob1, blob2):
    return replace(blob1,
                   top=min(blob1.top, blob2.top),
                   left=min(blob1.left, blob2.left),
                   bottom=max(blob1.bottom, blob2.bottom),
                   right=max(blob1.right, blob2.right),
                   coordinates=np.concatenate([blob1.coordinates, blob2.coordinates]))


def _consolidate_once(blobs):
    consolidated = []
    for blob in blobs:
        for idx, existing in enumerate(consolidated):
            if blobs_touch(existing, blob):
                consolidated[idx] = merge_blobs(existing, blob)
                break
        else:
            consolidated.append(blob)
    return consolidated


def consolidate_blobs(blobs):
    """
    Greedy first-match merge in discovery order. A merge can make a box grow
    into one that was already kept separate, so passes repeat until nothing
    changes.
    """
    consolidated = list(blobs)
    while True:
        merged = _consolidate_once(consolidated)
        if len(merged) == len(consolidated):
            return merged
        consolidated = merged


#%% ################################################################################
# Leaf disk classification

def is_within_tolerance(correct_num, num, tolerance):
    return abs(correct_num - num) < correct_num * tolerance


def is_blob_circular(blob, squareness_tolerance=SQUARENESS_TOLERANCE,
                     pixel_count_tolerance=PIXEL_COUNT_TOLERANCE,
                     min_disk_height=MIN_DISK_HEIGHT):
    """
    A leaf disk is about as high as it is wide, and holds about as many
    pixels as a circle of that size. Both must hold: an elongated smear with
    the right pixel count is still not a disk.
    """

    if blob.height <= min_disk_height:
        return False

    is_square = is_within_tolerance(blob.height, blob.width, squareness_tolerance)
    num_circle_pixels = math.pi * ((blob.height + blob.width) / 4) ** 2
    is_correct_number_of_pixels = is_within_tolerance(num_circle_pixels, blob.pixel_count,
                                                      pixel_count_tolerance)

    return is_square and is_correct_number_of_pixels


def blob_roundness(blob):
    """ Roundness 4*pi*area/perimeter**2 of the blob, for diagnostics """

    the_regionprops = regionprops(blob.local_mask(margin=1).astype(int))
    perimeter = the_regionprops[0].perimeter
    if perimeter == 0:
        return np.nan
    return 4 * np.pi * the_regionprops[0].area / perimeter ** 2


def classify_blobs(blobs, config=None):
    """
    Return the blobs with leaf disks replaced by Disk objects. Blobs that
    are not disks are kept (for drawing borders) but never processed further.
    """

    kwargs = {}
    if config is not None:
        kwargs = dict(squareness_tolerance=config.squareness_tolerance,
                      pixel_count_tolerance=config.pixel_count_tolerance,
                      min_disk_height=config.min_disk_height)

    classified = []
    for blob in blobs:
        roundness = blob_roundness(blob)
        if is_blob_circular(blob, **kwargs):
            classified.append(Disk.from_blob(blob, is_leaf_disk=True, roundness=roundness))
        else:
            classified.append(replace(blob, is_leaf_disk=False, roundness=roundness))

    n_disks = sum(blob.is_leaf_disk for blob in classified)
    logger.info(f"{n_disks} of {len(classified)} blobs classified as leaf disks")
    return classified


def require_disks(blobs):
    """Raise SegmentationDegenerate when there is nothing to measure."""
    if len(blobs) == 0:
        raise SegmentationDegenerate("No dark blobs detected.", status='no_blobs')
    disks = [blob for blob in blobs if blob.is_leaf_disk]
    if len(disks) == 0:
        raise SegmentationDegenerate(f"None of the {len(blobs)} blobs looks like a leaf disk.",
                                     status='no_disks')
    return disks


#%% ################################################################################
# Rows

def _group_first_member(disks):
    rows = []
    for disk in disks:
        for row in rows:
            # only the first disk of a row is compared
            if ranges_overlap(row[0].top, row[0].bottom, disk.top, disk.bottom):
                row.append(disk)
                break
        else:
            rows.append([disk])
    return rows


def _group_transitive(disks):
    parent = list(range(len(disks)))

    def find(i):
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(disks)):
        for j in range(i + 1, len(disks)):
            if ranges_overlap(disks[i].top, disks[i].bottom, disks[j].top, disks[j].bottom):
                parent[find(j)] = find(i)

    groups = {}
    for i, disk in enumerate(disks):
        groups.setdefault(find(i), []).append(disk)
    return list(groups.values())


def group_disks_by_row(disks, method='first_member'):
    """
    Cluster disks into rows by vertical overlap; rows top to bottom, disks
    within a row left to right.

    'first_member' tests a disk against the first disk of each row only, so
    a disk that overlaps a later member but not the first starts a new row.
    'transitive' puts all disks connected through overlaps in one row.
    """

    disks = sorted(disks, key=lambda d: d.left)

    if method == 'first_member':
        rows = _group_first_member(disks)
    elif method == 'transitive':
        rows = _group_transitive(disks)
    else:
        raise ValueError(f"Invalid method: {method}. Choose from 'first_member' or 'transitive'.")

    rows.sort(key=lambda row: row[0].top)
    logger.info(f"Grouped {len(disks)} disks into {len(rows)} rows")
    return rows
