import math

import numpy as np
import pandas as pd
import pytest

from conftest import image_from_masks
from oxalicstats_analysis import (
    MEASURES,
    calculate_susceptibility,
    disk_necrotic_rates,
    export_results,
    make_synthetic_plate,
    plot_brightness_curve,
    plot_susceptibility,
    recalculate,
    run_assay,
    run_assay_file,
)
from oxalicstats_blobs import Disk
from oxalicstats_config import AssayConfig, InputError

INNER_RADII = [[40, 39, 41], [35, 34, 36], [30, 29, 31], [24, 25, 23]]


@pytest.fixture(scope='module')
def plate_result():
    return run_assay(make_synthetic_plate(INNER_RADII), concentrations=[8, 12, 14, 16],
                     diameter=15.875, hours=24)


def test_single_disk_end_to_end(ring_disk_image):
    result = run_assay(ring_disk_image, concentrations=[10])

    assert result.status == 'ok'
    assert len(result.blobs) == 1
    assert len(result.rows) == 1 and len(result.rows[0]) == 1
    disk = result.rows[0][0]
    assert disk.is_leaf_disk
    assert abs(disk.necrotic_portion - 0.49) <= 0.05
    assert abs(disk.necrotic_inner_radius - 35) <= 2

    # one concentration is not enough for a line
    for fit in result.report.fits.values():
        assert fit.regression is None
        assert 'at least 2 points' in fit.undefined_reason


def test_plate_rows_and_dose_response(plate_result):
    assert plate_result.status == 'ok'
    assert len(plate_result.blobs) == 13
    assert [len(row) for row in plate_result.rows] == [3, 3, 3, 3]

    for row, radii in zip(plate_result.rows, INNER_RADII):
        for disk, radius in zip(row, radii):
            assert abs(disk.necrotic_inner_radius - radius) <= 2

    for measure in MEASURES:
        fit = plate_result.report.fits[measure]
        assert len(fit.x) == 4
        np.testing.assert_allclose(fit.x, np.log10([8, 12, 14, 16]))
        assert fit.regression.slope > 0
        assert 0 <= fit.regression.r_squared <= 1


def test_row_averages(plate_result):
    df_rows = plate_result.report.row_averages
    assert list(df_rows['n_disks']) == [3, 3, 3, 3]
    df_disks = plate_result.report.disk_rates
    expected = df_disks[df_disks['row'] == 2]['necrotic_area_rate'].mean()
    assert df_rows.loc[df_rows['row'] == 2, 'necrotic_area_rate'].item() == pytest.approx(expected)


def test_recalculate_only_redoes_regression(plate_result):
    portions = [disk.necrotic_portion for disk in plate_result.disks]
    updated = recalculate(plate_result, [8, 12, 14, 18])

    assert updated.rows is plate_result.rows
    assert updated.field is plate_result.field
    assert [disk.necrotic_portion for disk in plate_result.disks] == portions
    assert updated.report.fits['necrotic_area_rate'].x[-1] == pytest.approx(math.log10(18))
    assert plate_result.report.fits['necrotic_area_rate'].x[-1] == pytest.approx(math.log10(16))

    again = recalculate(plate_result, [8, 12, 14, 18])
    pd.testing.assert_frame_equal(again.report.summary(), updated.report.summary())


def test_transitive_rows_and_brightness_method_run():
    config = AssayConfig(necrosis_method='brightness', row_method='transitive', blob_method='scanline')
    result = run_assay(make_synthetic_plate(INNER_RADII), concentrations=[8, 12, 14, 16], config=config)
    assert [len(row) for row in result.rows] == [3, 3, 3, 3]
    assert all(disk.transition_index is not None for disk in result.disks)


def test_empty_plate_reports_no_blobs():
    img = image_from_masks((50, 50))
    result = run_assay(img)

    assert result.status == 'no_blobs'
    assert result.rows == []
    assert result.report.disk_rates.empty
    assert all(fit.regression is None for fit in result.report.fits.values())


def test_empty_plate_with_concentrations_still_reports_no_blobs():
    result = run_assay(image_from_masks((50, 50)), concentrations=[8, 12, 14, 16])

    assert result.status == 'no_blobs'
    assert result.rows == []
    assert all(fit.regression is None for fit in result.report.fits.values())

    again = recalculate(result, [8, 12, 14, 18])
    assert again.status == 'no_blobs'
    assert again.report.disk_rates.empty


def test_ink_only_reports_no_disks():
    img = image_from_masks((50, 80))
    img[20:25, 10:60] = (20, 20, 20)
    result = run_assay(img)

    assert result.status == 'no_disks'
    assert len(result.blobs) == 1
    assert result.rows == []

    result = run_assay(img, concentrations=[8, 12])
    assert result.status == 'no_disks'
    assert all(fit.regression is None for fit in result.report.fits.values())


def test_default_concentrations():
    result = run_assay(make_synthetic_plate(INNER_RADII))
    np.testing.assert_allclose(result.report.fits['ring_width_rate'].x, np.log10([8, 12, 14, 16]))

    with pytest.raises(ValueError):
        run_assay(make_synthetic_plate(INNER_RADII + [[20, 20, 20]]))


@pytest.mark.parametrize('concentrations, diameter, hours', [
    ([8, 12, 14], 15.875, 24),
    ([8, 12, 14, 0], 15.875, 24),
    ([8, 12, 14, 16], 0, 24),
    ([8, 12, 14, 16], 15.875, -1),
])
def test_bad_assay_parameters(plate_result, concentrations, diameter, hours):
    with pytest.raises(ValueError):
        calculate_susceptibility(plate_result.rows, concentrations, diameter, hours)


def test_disk_rates():
    disk = Disk(top=0, left=0, bottom=100, right=100, coordinates=np.zeros((0, 2), dtype=int),
                is_leaf_disk=True, necrotic_portion=0.5, necrotic_inner_radius=25)
    rates = disk_necrotic_rates(disk, diameter=10, hours=2)

    assert rates['necrotic_area_rate'] == pytest.approx(0.5 * math.pi * 25 / 2)
    assert rates['ring_width_rate'] == pytest.approx((5 - 2.5) / 2)
    assert rates['circle_area_rate'] == pytest.approx((math.pi * 25 - math.pi * 2.5 ** 2) / 2)


def test_disk_rates_without_circle():
    disk = Disk(top=0, left=0, bottom=100, right=100, coordinates=np.zeros((0, 2), dtype=int),
                is_leaf_disk=True, necrotic_portion=0.25)
    rates = disk_necrotic_rates(disk, diameter=10, hours=1)
    assert np.isnan(rates['ring_width_rate']) and np.isnan(rates['circle_area_rate'])


def test_invalid_config():
    with pytest.raises(ValueError):
        run_assay(make_synthetic_plate(INNER_RADII), config=AssayConfig(necrosis_method='ml'))


def test_run_assay_file(tmp_path):
    from PIL import Image
    file_path = tmp_path / 'plate.png'
    Image.fromarray(make_synthetic_plate(INNER_RADII)).save(file_path)

    result = run_assay_file(file_path, concentrations=[8, 12, 14, 16])
    assert len(result.disks) == 12

    bad_path = tmp_path / 'broken.png'
    bad_path.write_bytes(b'\x89PNG broken')
    with pytest.raises(InputError):
        run_assay_file(bad_path)


def test_export_and_plots(plate_result, tmp_path):
    df_disks, df_summary = export_results(plate_result, str(tmp_path), basename='plate')

    assert len(df_disks) == 12
    assert set(df_summary['measure']) == set(MEASURES)
    for name in ['plate_disks.csv', 'plate_disks.xlsx', 'plate_fits.csv', 'plate_overlay.png']:
        assert (tmp_path / name).exists()

    plot_susceptibility(plate_result.report, str(tmp_path))
    assert (tmp_path / 'plots' / 'susceptibility.pdf').exists()

    disk = plate_result.rows[0][0]
    plot_brightness_curve(disk, plate_result.field, 0, 0, str(tmp_path))
    assert (tmp_path / 'plots' / 'brightness_row0_disk0.pdf').exists()
