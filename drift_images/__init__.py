"""drift_images - image loading and caching core for the Drift client."""

__version__ = "0.1.0"
