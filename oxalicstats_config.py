#%% ################################################################################
# Settings shared by all oxalicstats modules.
#
# All thresholds were tuned by eye on photographs of 5/8" leaf disks soaked in
# oxalic acid; they vary between cameras and lighting, so everything below can
# be overridden per run through AssayConfig.

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple


#%% ################################################################################
# Constants

DARK_THRESHOLD = 150            # dark iff r, g and b are all below this (0-255)

SQUARENESS_TOLERANCE = 0.05     # relative difference allowed between height and width
PIXEL_COUNT_TOLERANCE = 0.05    # relative difference allowed vs. pi*((h+w)/4)**2
MIN_DISK_HEIGHT = 20            # px; ink marks and dust are smaller than this

VEIN_RADIUS = 5                 # px; 11x11 neighbourhood box
VEIN_MIN_FRACTION = 0.33        # necrotic fraction below which a pixel is a vein
VEIN_PASSES = 5

CIRCLE_SAMPLES = 1000
CIRCLE_NECROTIC_FRACTION = 0.5

TRANSITION_SMOOTHING = 0.05
TRANSITION_PEAK_SMOOTHING = 0.01
TRANSITION_MAX_POINTS = 500     # first derivative is sampled at ~this many windows

DEFAULT_DISK_DIAMETER = 15.875  # mm, 5/8 inch punch -> 197.93 mm^2
DEFAULT_SOAK_HOURS = 24.0
DEFAULT_CONCENTRATIONS = (8, 12, 14, 16)  # mM, top row first

NECROSIS_METHODS = ('channel', 'brightness')
ROW_METHODS = ('first_member', 'transitive')
BLOB_METHODS = ('label', 'scanline')


#%% ################################################################################
# Errors

class InputError(ValueError):
    """Image could not be decoded, or the pixel buffer is empty or not rectangular."""


class SegmentationDegenerate(ValueError):
    """No blobs, or no blobs that look like leaf disks, were found."""

    def __init__(self, message, status):
        super().__init__(message)
        self.status = status


class RegressionUndefined(ValueError):
    """Not enough spread in x to fit a line (distinct from a poor fit)."""


#%% ################################################################################
# Configuration

@dataclass(frozen=True)
class AssayConfig:
    """
    All tunable parameters of one analysis run.

    necrosis_method : 'channel' (red > green plus vein suppression) or
        'brightness' (global brightness transition, older and more fragile).
    row_method : 'first_member' compares each disk against the first disk of
        every row only; 'transitive' joins rows through any overlapping member.
    blob_method : 'label' (connected components) or 'scanline' (directional
        fill, only exact for convex dark regions).
    """
    dark_threshold: int = DARK_THRESHOLD
    squareness_tolerance: float = SQUARENESS_TOLERANCE
    pixel_count_tolerance: float = PIXEL_COUNT_TOLERANCE
    min_disk_height: int = MIN_DISK_HEIGHT
    vein_radius: int = VEIN_RADIUS
    vein_min_fraction: float = VEIN_MIN_FRACTION
    vein_passes: int = VEIN_PASSES
    circle_samples: int = CIRCLE_SAMPLES
    circle_necrotic_fraction: float = CIRCLE_NECROTIC_FRACTION
    transition_smoothing: float = TRANSITION_SMOOTHING
    transition_peak_smoothing: float = TRANSITION_PEAK_SMOOTHING
    transition_max_points: int = TRANSITION_MAX_POINTS
    max_fill_pixels: Optional[int] = None
    necrosis_method: str = 'channel'
    row_method: str = 'first_member'
    blob_method: str = 'label'
    default_concentrations: Tuple[float, ...] = field(default=DEFAULT_CONCENTRATIONS)

    def validate(self):
        if not 0 < self.dark_threshold <= 256:
            raise ValueError(f"dark_threshold must be in (0, 256], got {self.dark_threshold}")
        for name in ('squareness_tolerance', 'pixel_count_tolerance',
                     'transition_smoothing', 'transition_peak_smoothing'):
            if not 0 < getattr(self, name) < 1:
                raise ValueError(f"{name} must be between 0 and 1, got {getattr(self, name)}")
        if not 0 <= self.vein_min_fraction <= 1:
            raise ValueError(f"vein_min_fraction must be between 0 and 1, got {self.vein_min_fraction}")
        if self.min_disk_height < 0 or self.vein_radius < 0 or self.vein_passes < 0:
            raise ValueError("min_disk_height, vein_radius and vein_passes cannot be negative")
        if self.circle_samples < 1 or self.transition_max_points < 1:
            raise ValueError("circle_samples and transition_max_points must be positive")
        if self.max_fill_pixels is not None and self.max_fill_pixels < 1:
            raise ValueError("max_fill_pixels must be positive or None")
        if self.necrosis_method not in NECROSIS_METHODS:
            raise ValueError(f"Invalid necrosis_method: {self.necrosis_method}. Choose from {NECROSIS_METHODS}.")
        if self.row_method not in ROW_METHODS:
            raise ValueError(f"Invalid row_method: {self.row_method}. Choose from {ROW_METHODS}.")
        if self.blob_method not in BLOB_METHODS:
            raise ValueError(f"Invalid blob_method: {self.blob_method}. Choose from {BLOB_METHODS}.")
        return self

    def updated(self, **changes):
        return replace(self, **changes).validate()
