# %%

import logging

import oxalicstats_analysis as osa
from oxalicstats_config import AssayConfig
    # import importlib; importlib.reload(osa)

logging.basicConfig(level=logging.INFO)


# %%

OUTPUTDIR = '/Users/me/Data/2025_OxalicAcid/OUTPUT/'
IMAGE_PATH = '/Users/me/Data/2025_OxalicAcid/plate_01.jpg'

# 1) Assay parameters: one concentration (mM) per row of disks, top row first
concentrations = [8, 12, 14, 16]
disk_diameter = 15.875  # mm
hours_soaked = 24

# Brighter photographs may need a higher dark threshold
config = AssayConfig(dark_threshold=150, necrosis_method='channel', row_method='first_member')

# 2) Run the complete analysis pipeline
result = osa.run_assay_file(IMAGE_PATH, concentrations, disk_diameter, hours_soaked, config)
print(result.status)
print(result.report.summary())

# 3) Export the disk table, the fits and the labelled overlay
osa.export_results(result, OUTPUTDIR, basename='plate_01')
osa.plot_susceptibility(result.report, OUTPUTDIR)

# %%

# Typo in a concentration? Only the regression has to be redone.
result = osa.recalculate(result, [8, 12, 14, 18])
print(result.report.summary())

# %%

# Same image with the older brightness-transition method, for comparison;
# check the brightness curves to see if each disk has a clear transition
config_brightness = config.updated(necrosis_method='brightness')
result_brightness = osa.run_assay_file(IMAGE_PATH, concentrations, disk_diameter, hours_soaked,
                                       config_brightness)
for row_idx, row in enumerate(result_brightness.rows):
    for disk_idx, disk in enumerate(row):
        osa.plot_brightness_curve(disk, row_idx=row_idx, disk_idx=disk_idx, outputdir=OUTPUTDIR)
print(result_brightness.report.summary())
