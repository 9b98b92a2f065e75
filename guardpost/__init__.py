"""guardpost — health monitor and alert dispatcher for a small site."""

__version__ = "0.1.0"
