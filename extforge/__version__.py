"""Version information for extforge."""

__version__ = "0.3.0"
