"""
Local persistence.

Provides the per-channel value cache used for optimistic loading.
"""

from .cache import LocalCache

__all__ = ["LocalCache"]
