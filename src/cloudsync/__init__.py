"""cloudsync - local/cloud reconciliation with a size-bounded offline cache."""

__version__ = "0.1.0"
