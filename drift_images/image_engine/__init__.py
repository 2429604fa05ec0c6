"""Image Engine - fetch, decode and cache remote images.

This package provides the core loading pipeline:
- Request coalescing per resource (fetcher)
- Downsampling decode with pyvips (decoder)
- Cost-bounded LRU of decoded bitmaps (memory_cache)
- Optional durable byte tier (db)
- The per-caller Phase state machine (provider)

Usage:
    from drift_images.image_engine import ImageProvider, TargetSize

    provider = ImageProvider.from_settings(settings)
    req = provider.request("https://cdn.example.com/a.jpg", TargetSize(56, 56), listener=on_phase)
    req.phase          # SUCCESS immediately on a cache hit, LOADING otherwise
"""

from .decoder import Decoder, decode_bytes
from .errors import DecodeError, ImageError, NetworkError
from .fetcher import FetchCoordinator, PendingFetch
from .memory_cache import CacheStore
from .metrics import metrics
from .provider import ImageProvider, ImageRequest
from .types import Bitmap, CacheKey, Phase, PhaseState, ResourceRef, TargetSize

__all__ = [
    "Bitmap",
    "CacheKey",
    "CacheStore",
    "DecodeError",
    "Decoder",
    "FetchCoordinator",
    "ImageError",
    "ImageProvider",
    "ImageRequest",
    "NetworkError",
    "PendingFetch",
    "Phase",
    "PhaseState",
    "ResourceRef",
    "TargetSize",
    "decode_bytes",
    "metrics",
]
