"""Firefox history keyword search: fetch, cache and search visited pages."""

__version__ = "0.1.0"
