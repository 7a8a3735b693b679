"""Agent version, sent with every report and beacon."""

__version__ = "0.1.0"
