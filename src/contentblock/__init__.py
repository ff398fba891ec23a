"""
contentblock - filter list based request blocking.
"""

__version__ = "0.1.0"
