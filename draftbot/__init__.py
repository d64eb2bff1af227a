"""Draft tournament bot: brackets, result arbitration and finalization."""

__version__ = "0.3.0"
