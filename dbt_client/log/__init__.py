"""
Logging module for the client.
This module provides functionality to set up console logging, including the
analyzer's trace output.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
