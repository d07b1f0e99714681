"""Image normalization, inference and tag thresholding."""
