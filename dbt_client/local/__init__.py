"""
Local package for the DBT language client.

This package provides the merged client configuration through the
effective_settings object and the lifecycle supervisor in `supervisor`.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
