"""
Adaptive smart grid trading engine.
"""

__version__ = "0.1.0"
