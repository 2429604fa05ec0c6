"""Value types shared by the image engine.

Everything here is immutable and safe to hand across threads.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

_RGB_CHANNELS = 3
_EXPECTED_NDIM = 3


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Identity of a remote image (its source location)."""

    location: str

    def __post_init__(self) -> None:
        if not isinstance(self.location, str) or not self.location.strip():
            raise ValueError("resource location must be a non-empty string")

    @classmethod
    def of(cls, value: ResourceRef | str) -> ResourceRef:
        if isinstance(value, ResourceRef):
            return value
        return cls(value)

    def __str__(self) -> str:
        return self.location


@dataclass(frozen=True)
class TargetSize:
    """Requested decode size in logical (display) units."""

    width: float
    height: float

    def __post_init__(self) -> None:
        for dim in (self.width, self.height):
            if not math.isfinite(dim) or dim <= 0:
                raise ValueError(f"target size must be finite and positive, got {self.width}x{self.height}")

    def longest_edge_px(self, scale: float = 1.0) -> int:
        return max(1, round(max(self.width, self.height) * scale))


@dataclass(frozen=True)
class CacheKey:
    resource: ResourceRef
    size: TargetSize | None = None


@dataclass(frozen=True, eq=False)
class Bitmap:
    """Decoded RGB pixels, (height, width, 3) uint8, read-only."""

    pixels: np.ndarray

    def __post_init__(self) -> None:
        arr = self.pixels
        if arr.ndim != _EXPECTED_NDIM or arr.shape[2] != _RGB_CHANNELS or arr.dtype != np.uint8:
            raise ValueError(f"unexpected bitmap array: shape={arr.shape} dtype={arr.dtype}")
        arr.flags.writeable = False

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def cost(self) -> int:
        """Estimated resident memory in bytes."""
        return int(self.pixels.nbytes)


class PhaseState(Enum):
    EMPTY = "empty"
    LOADING = "loading"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Phase:
    """Observable state of one image load."""

    state: PhaseState
    bitmap: Bitmap | None = field(default=None, compare=False)
    error: BaseException | None = field(default=None, compare=False)

    @classmethod
    def empty(cls) -> Phase:
        return cls(PhaseState.EMPTY)

    @classmethod
    def loading(cls) -> Phase:
        return cls(PhaseState.LOADING)

    @classmethod
    def success(cls, bitmap: Bitmap) -> Phase:
        return cls(PhaseState.SUCCESS, bitmap=bitmap)

    @classmethod
    def failure(cls, error: BaseException) -> Phase:
        return cls(PhaseState.FAILURE, error=error)

    @property
    def is_empty(self) -> bool:
        return self.state is PhaseState.EMPTY

    @property
    def is_loading(self) -> bool:
        return self.state is PhaseState.LOADING

    @property
    def is_success(self) -> bool:
        return self.state is PhaseState.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.state is PhaseState.FAILURE
