"""Real-time messaging backend for the social network."""

__version__ = "0.1.0"
