"""PostSecret AI - classification, embedding and bulk-processing pipeline."""

__version__ = "0.1.0"
