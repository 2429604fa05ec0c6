"""Qt adapter for the rendering consumer.

The image engine never touches Qt; views bind to QtImageRequest instead,
which re-emits ImageRequest phase changes as Qt signals. Phases may be
produced on fetch/decode worker threads; the QObject lives in the GUI
thread, so connected slots there receive them as queued calls.

QImage creation from raw buffers is thread-safe; turning it into a
QPixmap must still happen on the GUI thread.
"""

from __future__ import annotations

import numpy as np
from PySide6.QtCore import QObject, Signal
from PySide6.QtGui import QImage

from .image_engine.provider import ImageProvider, ImageRequest
from .image_engine.types import Bitmap, Phase, ResourceRef, TargetSize
from .logger import get_logger

_logger = get_logger("qt_bridge")

_RGB_CHANNELS = 3


def bitmap_to_qimage(bitmap: Bitmap) -> QImage:
    """Convert a Bitmap (H,W,3 uint8) into a QImage that owns its pixels."""
    arr = np.ascontiguousarray(bitmap.pixels)
    height, width = arr.shape[0], arr.shape[1]
    bytes_per_line = _RGB_CHANNELS * width
    # .copy() detaches the QImage from the numpy buffer lifetime.
    return QImage(arr.data, width, height, bytes_per_line, QImage.Format.Format_RGB888).copy()


class QtImageRequest(QObject):
    """Signal-emitting wrapper around one ImageRequest scope."""

    phase_changed = Signal(object)  # Phase
    image_ready = Signal(QImage)
    load_failed = Signal(str)

    def __init__(self, provider: ImageProvider, parent: QObject | None = None):
        super().__init__(parent)
        self._request = ImageRequest(provider)
        self._request.add_listener(self._on_phase)

    @property
    def phase(self) -> Phase:
        return self._request.phase

    @property
    def request(self) -> ImageRequest:
        return self._request

    def set_source(self, resource: ResourceRef | str | None, size: TargetSize | None = None) -> Phase:
        """Point the view at a new identity (or None to clear it)."""
        return self._request.update(resource, size)

    def clear(self) -> None:
        self._request.cancel()

    def _on_phase(self, phase: Phase) -> None:
        self.phase_changed.emit(phase)
        if phase.is_success and phase.bitmap is not None:
            try:
                self.image_ready.emit(bitmap_to_qimage(phase.bitmap))
            except Exception as e:
                _logger.exception("QImage conversion failed")
                self.load_failed.emit(str(e))
        elif phase.is_failure:
            self.load_failed.emit(str(phase.error))
