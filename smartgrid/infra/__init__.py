"""
Infrastructure: logging setup and Hyperliquid I/O wrappers.
"""
