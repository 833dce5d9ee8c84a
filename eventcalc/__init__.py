"""Cost-center synchronization and pricing normalization for catering events."""

__version__ = "0.1.0"
