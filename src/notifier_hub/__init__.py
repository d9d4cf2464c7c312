"""Multi-platform chat notification hub with cross-session coordination."""

__version__ = "0.1.0"
