"""Job feed importer: fetch job feeds, queue their items and merge them into one store."""

__all__ = ["__version__"]

__version__ = "0.1.0"
