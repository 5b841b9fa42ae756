"""Background task scheduler for delegated agent sessions."""

__version__ = "0.1.0"
