"""iocweave: multi-source IOC collection, correlation, and infrastructure pivots."""

__version__ = "0.1.0"
