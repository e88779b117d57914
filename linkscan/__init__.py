"""LinkScan: explainable URL risk scanning with a staged job pipeline."""

__version__ = "1.0"
