# ==============================================================================
# Land-Cover Classifier Serving
# ==============================================================================
#
# Serves predictions from a trained land-cover image classifier.
#
# Subpackages:
#   - serving: artifact resolution, model lifecycle, preprocessing,
#              confidence-thresholded decisions and the HTTP surface
#   - _utils: shared logging helpers
#
# ==============================================================================
"""Land-cover classifier serving."""

__version__ = "1.0.0"
