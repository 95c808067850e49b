#%% ################################################################################
# Necrosis labelling within leaf disks, and the best-fit circle that measures
# how far the necrosis has progressed from the disk edge inwards.

import logging
from dataclasses import replace

import numpy as np
import scipy.ndimage as ndi

from oxalicstats_config import (
    CIRCLE_NECROTIC_FRACTION,
    CIRCLE_SAMPLES,
    TRANSITION_MAX_POINTS,
    TRANSITION_PEAK_SMOOTHING,
    TRANSITION_SMOOTHING,
    VEIN_MIN_FRACTION,
    VEIN_PASSES,
    VEIN_RADIUS,
)
from oxalicstats_pixels import with_necrotic
from oxalicstats_regression import find_transition_index, round_half_up

logger = logging.getLogger(__name__)


#%% ################################################################################
# Labelling strategies

class NecrosisStrategy:
    """
    Decides which pixels of a disk are necrotic. Subclasses implement
    label(disk, field), returning an (M, 2) array of (row, col) coordinates.
    """

    name = None

    def label(self, disk, field):
        raise NotImplementedError

    def label_disk(self, disk, field):
        necrotic_coordinates = self.label(disk, field)
        return replace(disk,
                       necrotic_coordinates=necrotic_coordinates,
                       necrotic_portion=necrotic_portion(necrotic_coordinates, disk))


def necrotic_portion(necrotic_coordinates, disk):
    if disk.pixel_count == 0:
        return 0.0
    return len(necrotic_coordinates) / disk.pixel_count


def suppress_veins(mask_necrotic, radius=VEIN_RADIUS, min_fraction=VEIN_MIN_FRACTION,
                   passes=VEIN_PASSES):
    """
    Remove thin necrotic-looking structures (leaf veins): a pixel stays
    necrotic only if at least min_fraction of the (2*radius+1)^2 box around
    it is necrotic. Pixels outside the image count as not necrotic.

    Removing vein pixels can expose more, so this is repeated up to
    `passes` times, stopping early once a pass removes nothing.
    """

    kernel = np.ones((2 * radius + 1, 2 * radius + 1), dtype=int)
    min_count = min_fraction * kernel.size
    mask_necrotic = mask_necrotic.astype(bool)

    for pass_idx in range(passes):
        counts = ndi.convolve(mask_necrotic.astype(int), kernel, mode='constant', cval=0)
        veins = mask_necrotic & (counts < min_count)
        if not np.any(veins):
            break
        mask_necrotic = mask_necrotic & ~veins
        logger.debug(f"Vein pass {pass_idx + 1}: removed {int(veins.sum())} pixels")

    return mask_necrotic


class ChannelThresholdStrategy(NecrosisStrategy):
    """Necrotic tissue is browner than healthy tissue: red above green."""

    name = 'channel'

    def __init__(self, vein_radius=VEIN_RADIUS, vein_min_fraction=VEIN_MIN_FRACTION,
                 vein_passes=VEIN_PASSES):
        self.vein_radius = vein_radius
        self.vein_min_fraction = vein_min_fraction
        self.vein_passes = vein_passes

    def label(self, disk, field):
        if disk.pixel_count == 0:
            return np.zeros((0, 2), dtype=int)

        crop = field.rgb[disk.top:disk.bottom + 1, disk.left:disk.right + 1].astype(int)
        mask_necrotic = disk.local_mask() & (crop[:, :, 0] > crop[:, :, 1])
        mask_necrotic = suppress_veins(mask_necrotic, self.vein_radius,
                                       self.vein_min_fraction, self.vein_passes)

        rows, cols = np.nonzero(mask_necrotic)
        return np.column_stack([rows + disk.top, cols + disk.left])


class BrightnessTransitionStrategy(NecrosisStrategy):
    """
    Sort the disk pixels by brightness (r+g+b) and call everything brighter
    than the jump between the dark healthy plateau and the light necrotic
    plateau necrotic.

    Only meaningful when the brightness curve has exactly two plateaus; a
    disk that is all healthy or all necrotic still gets a (meaningless)
    transition.
    """

    name = 'brightness'

    def __init__(self, smoothing=TRANSITION_SMOOTHING, peak_smoothing=TRANSITION_PEAK_SMOOTHING,
                 max_points=TRANSITION_MAX_POINTS):
        self.smoothing = smoothing
        self.peak_smoothing = peak_smoothing
        self.max_points = max_points

    def sorted_brightness(self, disk, field):
        coords = disk.coordinates
        brightness = field.rgb[coords[:, 0], coords[:, 1]].astype(int).sum(axis=1)
        order = np.argsort(brightness, kind='stable')
        return brightness[order], order

    def transition(self, disk, field):
        brightness, order = self.sorted_brightness(disk, field)
        transition_i = find_transition_index(brightness, self.smoothing,
                                             self.peak_smoothing, self.max_points)
        return transition_i, brightness, order

    def _label_with_curve(self, disk, field):
        transition_i, brightness, order = self.transition(disk, field)
        return disk.coordinates[order[transition_i:]], transition_i, brightness

    def label(self, disk, field):
        return self._label_with_curve(disk, field)[0]

    def label_disk(self, disk, field):
        necrotic_coordinates, transition_i, brightness = self._label_with_curve(disk, field)
        return replace(disk,
                       necrotic_coordinates=necrotic_coordinates,
                       necrotic_portion=necrotic_portion(necrotic_coordinates, disk),
                       transition_index=transition_i,
                       sorted_brightness=brightness)


def make_necrosis_strategy(config=None, method=None):
    if method is None:
        method = config.necrosis_method if config is not None else 'channel'

    if method == 'channel':
        if config is None:
            return ChannelThresholdStrategy()
        return ChannelThresholdStrategy(config.vein_radius, config.vein_min_fraction,
                                        config.vein_passes)
    elif method == 'brightness':
        if config is None:
            return BrightnessTransitionStrategy()
        return BrightnessTransitionStrategy(config.transition_smoothing,
                                            config.transition_peak_smoothing,
                                            config.transition_max_points)
    raise ValueError(f"Invalid method: {method}. Choose from 'channel' or 'brightness'.")


def label_necrosis(rows, field, strategy=None):
    """
    Label the necrotic pixels of every disk. Returns new rows and a new
    field with is_necrotic set; the inputs are left untouched.
    """

    if strategy is None:
        strategy = ChannelThresholdStrategy()

    mask_necrotic = np.zeros(field.shape, dtype=bool)
    labeled_rows = []
    for row_idx, row in enumerate(rows):
        labeled_row = []
        for disk_idx, disk in enumerate(row):
            disk = strategy.label_disk(disk, field)
            if len(disk.necrotic_coordinates):
                mask_necrotic[disk.necrotic_coordinates[:, 0], disk.necrotic_coordinates[:, 1]] = True
            logger.debug(f"row {row_idx + 1}, disk {disk_idx + 1}: "
                         f"{disk.necrotic_portion:.3f} necrotic ({strategy.name})")
            labeled_row.append(disk)
        labeled_rows.append(labeled_row)

    return labeled_rows, with_necrotic(field, mask_necrotic)


#%% ################################################################################
# Best-fit circle

def circle_points(center, radius, samples=CIRCLE_SAMPLES, shape=None):
    """
    Integer pixels hit by `samples` equally spaced points on a circle,
    without duplicates. With shape given, points outside the image are dropped.
    """

    angles = np.linspace(0, 2 * np.pi, samples, endpoint=False)
    rows = round_half_up(center[0] + radius * np.sin(angles))
    cols = round_half_up(center[1] + radius * np.cos(angles))
    points = np.unique(np.column_stack([rows, cols]), axis=0)

    if shape is not None:
        inside = ((points[:, 0] >= 0) & (points[:, 0] < shape[0]) &
                  (points[:, 1] >= 0) & (points[:, 1] < shape[1]))
        points = points[inside]

    return points


def necrotic_fraction_on_circle(field, center, radius, samples=CIRCLE_SAMPLES):
    """
    Fraction of the dark pixels on the circle that are necrotic, and the
    number of dark pixels. The fraction is None when no dark pixel is hit.
    """

    points = circle_points(center, radius, samples, field.shape)
    on_dark = field.is_dark[points[:, 0], points[:, 1]]
    on_necrotic = field.is_necrotic[points[:, 0], points[:, 1]] & on_dark

    dark_count = int(on_dark.sum())
    if dark_count == 0:
        return None, 0
    return on_necrotic.sum() / dark_count, dark_count


def refine_inner_radius(disk, field, samples=CIRCLE_SAMPLES,
                        max_fraction=CIRCLE_NECROTIC_FRACTION):
    """
    Shrink a circle centred on the disk, starting at the disk radius, until
    at most max_fraction of it lies on necrotic tissue. The radius found is
    the inner edge of the necrotic ring.

    Returns (radius, status), status being 'ok', 'no_dark_on_circle' (the
    probe circle missed the disk altogether) or 'radius_exhausted'.
    """

    radius = int(round_half_up(disk.pixel_radius))
    center = disk.center

    while radius > 0:
        fraction, _ = necrotic_fraction_on_circle(field, center, radius, samples)
        if fraction is None:
            logger.warning(f"No dark pixels on circle of radius {radius} around {center}, "
                           f"stopping the search there.")
            return radius, 'no_dark_on_circle'
        if fraction <= max_fraction:
            return radius, 'ok'
        radius -= 1

    return 0, 'radius_exhausted'


def refine_rows(rows, field, config=None):
    """Add necrotic_inner_radius to every disk, returning new rows."""

    samples = config.circle_samples if config is not None else CIRCLE_SAMPLES
    max_fraction = config.circle_necrotic_fraction if config is not None else CIRCLE_NECROTIC_FRACTION

    refined_rows = []
    for row in rows:
        refined_row = []
        for disk in row:
            radius, status = refine_inner_radius(disk, field, samples, max_fraction)
            refined_row.append(replace(disk, necrotic_inner_radius=radius, refine_status=status))
        refined_rows.append(refined_row)

    return refined_rows


def all_disks(rows):
    return [disk for row in rows for disk in row]
