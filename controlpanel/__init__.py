"""Control Panel task state reconciliation engine."""

__version__ = "1.0.0"
