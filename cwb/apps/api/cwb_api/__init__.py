"""CWB API - subscription lifecycle engine for competitor-watch slots."""

__version__ = "0.3.0"
