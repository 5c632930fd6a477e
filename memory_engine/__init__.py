"""
Local Memory Engine.

Importance- and expiry-aware memory store with hybrid vector + keyword
retrieval.
"""

__version__ = "0.1.0"
