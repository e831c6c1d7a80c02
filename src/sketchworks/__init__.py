"""Sketchworks - asynchronous sketch-to-artwork generation pipeline."""

__version__ = "0.1.0"

from sketchworks.core.config import SketchworksConfig, config

__all__ = [
    "SketchworksConfig",
    "config",
    "__version__",
]
