"""
errorwatch: error deduplication and automated issue lifecycle management.
"""

__version__ = "0.1.0"
