"""devwatch: coordinated rebuild-and-restart supervisor for development builds."""

__version__ = "0.1.0"
