"""Pytest configuration.

Metrics are process-global; every test starts from a clean snapshot.

When PySide6 is installed a single QCoreApplication is created for the
session so Qt objects in the bridge tests have an application instance.
QCoreApplication needs no platform plugin, so this works headless.
"""

from __future__ import annotations

from typing import Any

import pytest

from drift_images.image_engine.metrics import metrics

_APP: Any | None = None


def pytest_configure(config) -> None:  # noqa: ARG001
    # Import lazily so non-Qt environments can still import this conftest.
    try:
        from PySide6.QtCore import QCoreApplication
    except ImportError:
        return

    global _APP

    app = QCoreApplication.instance()
    # Keep a strong ref so it isn't GC'd mid-session.
    _APP = app if app is not None else QCoreApplication([])


def pytest_sessionfinish(session, exitstatus) -> None:  # noqa: ARG001
    try:
        from PySide6.QtCore import QCoreApplication
    except ImportError:
        return

    app = QCoreApplication.instance()
    if app is None:
        return
    app.quit()
    app.processEvents()


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
