"""
Configuration package.
"""

from smartgrid.config.config import Settings

__all__ = ["Settings"]
