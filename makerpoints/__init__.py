"""StandX maker points bot."""

__version__ = "0.1.0"
