"""Signal intelligence pipeline: classify signals and surface ranked hotspots."""

__version__ = "0.1.0"
