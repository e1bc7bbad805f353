"""
Measure the sessile-drop contact angle from a single silhouette image.

Output is a text report with the ensemble angle, per-method fits and uncertainty.
"""
from skimage import color, io, util

from DropModels import ScaleCalibration
from dropletCA import format_report, measure_contact_angle

# Configuration
file_path            = 'droplet.png'
meters_per_pixel     = None  # e.g. 4.0e-6 from a stage micrometer; None uses 10 µm/px
relative_uncertainty = 0.02
calibration_source   = 'stage micrometer'

# Load and convert to an 8-bit intensity grid
image = io.imread(file_path)
if image.ndim == 3:
    image = color.rgb2gray(image[..., :3])
gray = util.img_as_ubyte(image)

calibration = None
if meters_per_pixel is not None:
    calibration = ScaleCalibration(meters_per_pixel, relative_uncertainty, calibration_source)

# Run computation
result = measure_contact_angle(
    gray.shape[1],
    gray.shape[0],
    gray.ravel(),
    calibration=calibration,
    verbose=True
)
print(format_report(result))
