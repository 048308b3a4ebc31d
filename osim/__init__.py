"""Operating-system simulator: a scheduling kernel and a paged memory server."""

__version__ = "0.1.0"