"""
Logging module for the launcher.
All output goes to stderr and a rotating log file; stdout belongs to the protocol stream.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
