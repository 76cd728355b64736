"""
AAAA Filter Proxy
A forwarding DNS proxy that answers AAAA queries for selected domains with
empty replies and keeps per-domain query statistics
"""

from .version import __author__, __version__

__all__ = ["__author__", "__version__"]
