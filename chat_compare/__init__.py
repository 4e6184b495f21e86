"""
ChatCompare.

Run one conversation against several token-metered chat providers at once.
"""

__version__ = "0.1.0"
