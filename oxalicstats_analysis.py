#%% ################################################################################
# Oxalic acid susceptibility assay: from a photograph of leaf disks (one row per
# concentration) to necrotic rates per disk and a dose-response fit per row.

import logging
import math
import os
from dataclasses import dataclass, replace
from typing import Dict, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from oxalicstats_blobs import classify_blobs, find_dark_blobs, group_disks_by_row, require_disks
from oxalicstats_config import (
    DEFAULT_DISK_DIAMETER,
    DEFAULT_SOAK_HOURS,
    AssayConfig,
    RegressionUndefined,
    SegmentationDegenerate,
)
from oxalicstats_necrosis import (
    BrightnessTransitionStrategy,
    all_disks,
    label_necrosis,
    make_necrosis_strategy,
    refine_rows,
)
from oxalicstats_pixels import (
    PixelField,
    load_pixel_field,
    mark_dark_pixels,
    pixel_field_from_array,
    render_overlay,
    save_overlay,
)
from oxalicstats_regression import RegressionResult, linear_regression

logger = logging.getLogger(__name__)

cm_to_inch = 1/2.54

MEASURES = ('necrotic_area_rate', 'ring_width_rate', 'circle_area_rate')
MEASURE_LABELS = {
    'necrotic_area_rate': 'Necrotic area (pixels) / h',
    'ring_width_rate': 'Necrotic ring width / h',
    'circle_area_rate': 'Necrotic area (circle) / h',
}
DISK_COLUMNS = ['row', 'disk', 'concentration', 'log_concentration',
                'necrotic_portion', 'necrotic_inner_radius_px', 'pixel_diameter'] + list(MEASURES)


#%% ################################################################################
# Necrotic rates and the dose-response fit

@dataclass(frozen=True, eq=False)
class SeriesFit:
    """
    One dose-response series, x = log10(concentration), y = row average.
    regression is None when no line can be fitted; undefined_reason says why.
    """
    measure: str
    x: np.ndarray
    y: np.ndarray
    regression: Optional[RegressionResult]
    undefined_reason: Optional[str] = None


@dataclass(frozen=True, eq=False)
class SusceptibilityReport:
    disk_rates: pd.DataFrame
    row_averages: pd.DataFrame
    fits: Dict[str, SeriesFit]
    diameter: float
    hours: float

    def summary(self):
        records = []
        for measure, fit in self.fits.items():
            records.append({
                'measure': measure,
                'n_points': len(fit.x),
                'slope': fit.regression.slope if fit.regression else np.nan,
                'y_intercept': fit.regression.y_intercept if fit.regression else np.nan,
                'r_squared': fit.regression.r_squared if fit.regression else np.nan,
                'undefined_reason': fit.undefined_reason,
            })
        return pd.DataFrame(records)


def disk_area(diameter):
    return math.pi * (diameter / 2) ** 2


def disk_necrotic_rates(disk, diameter, hours):
    """
    Necrotic rates of one disk, in the units of diameter per hour:
    necrotic_area_rate from the necrotic pixel count, ring_width_rate and
    circle_area_rate from the best-fit inner circle (NaN without one).
    """

    area = disk_area(diameter)
    rates = {'necrotic_area_rate': disk.necrotic_portion * area / hours}

    if disk.necrotic_inner_radius is None or disk.pixel_diameter <= 0:
        rates['ring_width_rate'] = np.nan
        rates['circle_area_rate'] = np.nan
        return rates

    # pixels -> physical units, using the disk itself as the ruler
    scale = diameter / disk.pixel_diameter
    inner_radius = disk.necrotic_inner_radius * scale
    rates['ring_width_rate'] = (diameter / 2 - inner_radius) / hours
    rates['circle_area_rate'] = (area - math.pi * inner_radius ** 2) / hours

    return rates


def fit_series(measure, x, y):
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    try:
        regression = linear_regression(x, y)
    except RegressionUndefined as err:
        logger.warning(f"No dose-response fit for {measure}: {err}")
        return SeriesFit(measure, x, y, None, str(err))
    return SeriesFit(measure, x, y, regression)


def calculate_susceptibility(rows, concentrations, diameter=DEFAULT_DISK_DIAMETER,
                             hours=DEFAULT_SOAK_HOURS):
    """
    Necrotic rates per disk, averaged per row, and a linear fit of each
    rate against log10(concentration).

    Only reads the disks; calling this again with other concentrations
    does not touch the segmentation.
    """

    if diameter <= 0:
        raise ValueError(f"Disk diameter must be positive, got {diameter}")
    if hours <= 0:
        raise ValueError(f"Soak duration must be positive, got {hours}")
    # no rows (nothing segmented) leaves every series empty, whatever was passed
    if rows and len(concentrations) != len(rows):
        raise ValueError(f"Got {len(concentrations)} concentrations for {len(rows)} rows.")
    if any(not conc > 0 for conc in concentrations):
        raise ValueError(f"Concentrations must be positive to take their log, got {list(concentrations)}")

    records = []
    for row_idx, (row, conc) in enumerate(zip(rows, concentrations)):
        for disk_idx, disk in enumerate(row):
            record = {
                'row': row_idx,
                'disk': disk_idx,
                'concentration': float(conc),
                'log_concentration': math.log10(conc),
                'necrotic_portion': disk.necrotic_portion,
                'necrotic_inner_radius_px': (np.nan if disk.necrotic_inner_radius is None
                                             else disk.necrotic_inner_radius),
                'pixel_diameter': disk.pixel_diameter,
            }
            record.update(disk_necrotic_rates(disk, diameter, hours))
            records.append(record)
    df_disks = pd.DataFrame(records, columns=DISK_COLUMNS)

    # rows without disks drop out here
    if df_disks.empty:
        df_rows = pd.DataFrame({column: pd.Series(dtype=float) for column in
                                ['row', 'concentration', 'log_concentration', 'n_disks'] + list(MEASURES)})
    else:
        df_rows = (df_disks
                   .groupby('row')
                   .agg(concentration=('concentration', 'first'),
                        log_concentration=('log_concentration', 'first'),
                        n_disks=('disk', 'count'),
                        **{measure: (measure, 'mean') for measure in MEASURES})
                   .reset_index())

    fits = {}
    for measure in MEASURES:
        valid = df_rows[np.isfinite(df_rows[measure].astype(float))]
        fits[measure] = fit_series(measure, valid['log_concentration'].to_numpy(),
                                   valid[measure].to_numpy())

    return SusceptibilityReport(disk_rates=df_disks, row_averages=df_rows, fits=fits,
                                diameter=diameter, hours=hours)


#%% ################################################################################
# Complete pipeline for one photograph

@dataclass(frozen=True, eq=False)
class AssayResult:
    field: PixelField
    blobs: list
    rows: list
    report: SusceptibilityReport
    status: str
    config: AssayConfig

    @property
    def disks(self):
        return all_disks(self.rows)


def resolve_concentrations(concentrations, n_rows, config):
    if concentrations is not None:
        return list(concentrations)
    if n_rows > len(config.default_concentrations):
        raise ValueError(f"Found {n_rows} rows but only {len(config.default_concentrations)} "
                         f"default concentrations; pass concentrations explicitly.")
    return list(config.default_concentrations[:n_rows])


def run_assay(image, concentrations=None, diameter=DEFAULT_DISK_DIAMETER,
              hours=DEFAULT_SOAK_HOURS, config=None):
    """
    Run all stages on one decoded image (array or PixelField).

    When no leaf disks are found the result has status 'no_blobs' or
    'no_disks', no rows, and fits without a regression.
    """

    config = (config or AssayConfig()).validate()
    field = image if isinstance(image, PixelField) else pixel_field_from_array(image)

    field = mark_dark_pixels(field, config.dark_threshold)
    blobs = find_dark_blobs(field, method=config.blob_method,
                            max_fill_pixels=config.max_fill_pixels)
    blobs = classify_blobs(blobs, config)

    try:
        disks = require_disks(blobs)
        status = 'ok'
    except SegmentationDegenerate as err:
        logger.warning(f"No leaf disks to measure: {err}")
        disks = []
        status = err.status

    rows = group_disks_by_row(disks, method=config.row_method)
    rows, field = label_necrosis(rows, field, make_necrosis_strategy(config))
    rows = refine_rows(rows, field, config)

    concentrations = resolve_concentrations(concentrations, len(rows), config)
    report = calculate_susceptibility(rows, concentrations, diameter, hours)

    return AssayResult(field=field, blobs=blobs, rows=rows, report=report,
                       status=status, config=config)


def run_assay_file(file_path, concentrations=None, diameter=DEFAULT_DISK_DIAMETER,
                   hours=DEFAULT_SOAK_HOURS, config=None):
    logger.info(f"Processing {file_path}")
    field = load_pixel_field(file_path)
    return run_assay(field, concentrations, diameter, hours, config)


def recalculate(result, concentrations, diameter=None, hours=None):
    """Redo only the dose-response part, e.g. after a concentration was corrected."""
    diameter = result.report.diameter if diameter is None else diameter
    hours = result.report.hours if hours is None else hours
    report = calculate_susceptibility(result.rows, concentrations, diameter, hours)
    return replace(result, report=report)


#%% ################################################################################
# Export

def export_disk_table(result):
    '''
    One line per leaf disk, with its position and all measurements.
    '''

    df_disks = result.report.disk_rates.copy()
    disks = [disk for row in result.rows for disk in row]

    df_disks['top'] = [disk.top for disk in disks]
    df_disks['left'] = [disk.left for disk in disks]
    df_disks['bottom'] = [disk.bottom for disk in disks]
    df_disks['right'] = [disk.right for disk in disks]
    df_disks['pixel_count'] = [disk.pixel_count for disk in disks]
    df_disks['necrotic_pixel_count'] = [len(disk.necrotic_coordinates) for disk in disks]
    df_disks['roundness'] = [disk.roundness for disk in disks]
    df_disks['refine_status'] = [disk.refine_status for disk in disks]
    df_disks['analysis_status'] = result.status

    return df_disks


def export_results(result, outputdir, basename='assay'):
    """
    Write the disk table and fit summary (CSV and Excel) and the labelled
    overlay image to outputdir.
    """

    os.makedirs(outputdir, exist_ok=True)

    df_disks = export_disk_table(result)
    df_disks.to_csv(os.path.join(outputdir, f'{basename}_disks.csv'), index=False)
    df_disks.to_excel(os.path.join(outputdir, f'{basename}_disks.xlsx'), index=False)

    df_summary = result.report.summary()
    df_summary.to_csv(os.path.join(outputdir, f'{basename}_fits.csv'), index=False)

    overlay = render_overlay(result.field, result.blobs)
    save_overlay(overlay, os.path.join(outputdir, f'{basename}_overlay.png'))

    return df_disks, df_summary


#%% ################################################################################
# Plots

def plot_brightness_curve(disk, field=None, row_idx=None, disk_idx=None, outputdir=None, show=False):
    """
    Sorted brightness of the disk pixels with the healthy/necrotic cut, to
    check by eye that the brightness method found the right transition.
    """

    strategy = BrightnessTransitionStrategy()
    if disk.sorted_brightness is None or disk.transition_index is None:
        if field is None:
            raise ValueError("Need the pixel field to compute the brightness curve of this disk.")
        transition_i, brightness, _ = strategy.transition(disk, field)
    else:
        transition_i, brightness = disk.transition_index, disk.sorted_brightness

    fig, ax = plt.subplots(1, 1, figsize=(8*cm_to_inch, 6*cm_to_inch))
    ax.plot(brightness, color='black', linewidth=1)
    if len(brightness) > 0:
        ax.axhline(brightness[min(transition_i, len(brightness) - 1)], color='red', linestyle=':')
    ax.set_xlabel('Pixel (sorted)')
    ax.set_ylabel('Brightness (r+g+b)')
    if row_idx is not None and disk_idx is not None:
        ax.set_title(f'row: {row_idx + 1}, col: {disk_idx + 1}')

    plt.tight_layout()
    if outputdir is not None:
        os.makedirs(outputdir + '/plots/', exist_ok=True)
        fig.savefig(outputdir + f'/plots/brightness_row{row_idx}_disk{disk_idx}.pdf', dpi=150)
    if show:
        plt.show()
    plt.close(fig)


def plot_susceptibility(report, outputdir=None, show=False):
    """
    Per measure: disk rates (grey), row averages (black) and the fitted line
    against log10(concentration).
    """

    fig, axs = plt.subplots(1, len(MEASURES), figsize=(17.2*cm_to_inch, 6*cm_to_inch))
    plt.rcParams.update({'font.size': 6})

    for ax, measure in zip(axs, MEASURES):
        fit = report.fits[measure]
        if not report.disk_rates.empty:
            sns.stripplot(x='log_concentration', y=measure, data=report.disk_rates,
                          ax=ax, color='grey', alpha=0.5, native_scale=True)
        ax.plot(fit.x, fit.y, 'ko')

        if fit.regression is not None:
            x_line = np.linspace(fit.x.min(), fit.x.max(), 2)
            ax.plot(x_line, fit.regression.predict(x_line), color='red')
            ax.set_title(f'slope={fit.regression.slope:.3g}\nR²={fit.regression.r_squared:.3f}')
        else:
            ax.set_title('no fit')

        ax.set_xlabel('log10(concentration)')
        ax.set_ylabel(MEASURE_LABELS[measure])

    plt.tight_layout()
    if outputdir is not None:
        os.makedirs(outputdir + '/plots/', exist_ok=True)
        fig.savefig(outputdir + '/plots/susceptibility.pdf', dpi=150)
    if show:
        plt.show()
    plt.close(fig)


#%% ################################################################################
# Synthetic assay plate

HEALTHY_RGB = (40, 110, 40)
NECROTIC_RGB = (120, 80, 30)
BACKGROUND_RGB = (235, 235, 235)
INK_RGB = (20, 20, 20)


def make_synthetic_plate(inner_radii, disk_radius=50, spacing=130, margin=20, ink_label=True):
    """
    White plate with one row of disks per entry of inner_radii. Each disk is
    healthy (green) within its inner radius and necrotic (brown) outside it.
    A short ink stroke left of the first row mimics a handwritten label.
    """

    n_rows = len(inner_radii)
    n_cols = max(len(row) for row in inner_radii)
    height = 2 * margin + n_rows * spacing
    width = 2 * margin + n_cols * spacing + 60

    img = np.empty((height, width, 3), dtype=np.uint8)
    img[:] = BACKGROUND_RGB
    y, x = np.indices((height, width))

    for row_idx, row in enumerate(inner_radii):
        for col_idx, inner_radius in enumerate(row):
            cy = margin + spacing // 2 + row_idx * spacing
            cx = 60 + margin + spacing // 2 + col_idx * spacing
            dist = np.sqrt((y - cy) ** 2 + (x - cx) ** 2)
            img[dist <= disk_radius] = NECROTIC_RGB
            img[dist <= inner_radius] = HEALTHY_RGB

    if ink_label:
        img[margin + spacing // 2 - 3:margin + spacing // 2 + 3, 10:50] = INK_RGB

    return img


# %%

if __name__ == "__main__":

    logging.basicConfig(level=logging.INFO)

    OUTPUTDIR = os.path.join(os.getcwd(), 'OUTPUT_synthetic')

    # 1) Four concentrations, three disks each; more acid -> smaller healthy core
    inner_radii = [[40, 39, 41], [35, 34, 36], [30, 29, 31], [24, 25, 23]]
    img_plate = make_synthetic_plate(inner_radii)

    # 2) Run the complete analysis
    result = run_assay(img_plate, concentrations=[8, 12, 14, 16],
                       diameter=DEFAULT_DISK_DIAMETER, hours=DEFAULT_SOAK_HOURS)
    print(result.report.summary())

    # 3) A corrected concentration only needs the regression redone
    result = recalculate(result, [8, 12, 14, 18])
    print(result.report.summary())

    # 4) Export tables, overlay and plots
    export_results(result, OUTPUTDIR, basename='synthetic')
    plot_susceptibility(result.report, OUTPUTDIR)
