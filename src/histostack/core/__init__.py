"""Core in-memory infrastructure shared by all stages."""

from histostack.core.image_cache import CacheEntry, ImageCache

__all__ = ["CacheEntry", "ImageCache"]
