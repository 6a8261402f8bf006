"""
Session registry.

Holds at most one loaded backend, keyed by its normalized model path.
Requesting the same path again (case-insensitively) returns the cached
backend; requesting a different path builds a new one and closes the old.
Lookup-or-create runs under one lock, so concurrent requests for a model
that is still loading wait for that load instead of starting another.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .backend import ExecutionProvider, InferenceBackend

ProgressCallback = Callable[[int, str], None]
BackendLoader = Callable[[str], InferenceBackend]


def normalize_model_path(path: str) -> str:
    """Absolute, case-folded path used as the cache key."""
    return os.path.normcase(os.path.abspath(os.path.expanduser(path))).casefold()


@dataclass
class _ProgressState:
    callback: Optional[ProgressCallback]
    percent: int = 0

    def step(self, percent: int, status: str) -> None:
        """Report a step; percentages never go backwards. Failures are ignored."""
        if self.callback is None:
            return
        self.percent = max(self.percent, min(100, percent))
        try:
            self.callback(self.percent, status)
        except Exception as e:
            logging.debug(f"Progress callback failed: {e}")


class SessionRegistry:
    """
    Single-entry cache of loaded inference backends.

    Example:
        registry = SessionRegistry(lambda path: OnnxBackend.load(path))
        backend = registry.ensure_session("models/seg.onnx")
    """

    def __init__(self, loader: BackendLoader):
        self._loader = loader
        self._lock = threading.Lock()
        self._key: Optional[str] = None
        self._path: Optional[str] = None
        self._backend: Optional[InferenceBackend] = None

    @property
    def current(self) -> Optional[InferenceBackend]:
        return self._backend

    @property
    def model_path(self) -> Optional[str]:
        return self._path

    @property
    def provider(self) -> Optional[ExecutionProvider]:
        backend = self._backend
        return backend.provider if backend is not None else None

    def ensure_session(self, model_path: str, progress: Optional[ProgressCallback] = None) -> InferenceBackend:
        """
        Return the backend for `model_path`, loading it if it is not cached.

        Args:
            model_path: Model file path.
            progress: Optional `(percent, status)` callback.
        """
        report = _ProgressState(progress)
        report.step(5, "Resolving model path")
        key = normalize_model_path(model_path)
        report.step(12, "Checking execution providers")
        report.step(20, "Configuring session options")
        report.step(35, "Preparing session")

        created = False
        with self._lock:
            if self._backend is not None and self._key == key:
                backend = self._backend
            else:
                start = time.perf_counter()
                backend = self._loader(model_path)
                init_ms = (time.perf_counter() - start) * 1000
                old = self._backend
                self._backend, self._key, self._path = backend, key, model_path
                created = True
                if old is not None:
                    try:
                        old.close()
                    except Exception as e:
                        logging.warning(f"Failed to close previous session: {e}")

        if created:
            logging.info(f"Session created for {model_path} on {backend.provider.value} ({init_ms:.0f} ms)")
            report.step(60, f"Session created ({init_ms:.0f} ms)")
        else:
            logging.info(f"Reusing cached session for {model_path}")
            report.step(45, "Reusing cached session")
            report.step(60, "Session ready")

        report.step(70, "Reading model IO metadata")
        size = backend.input_size()
        report.step(78, f"Input size {'dynamic' if size is None else size}")
        report.step(85, "Warm-up")
        report.step(92, "Initializing resources")
        report.step(100, "Done")
        return backend

    def close(self) -> None:
        """Close and forget the cached backend."""
        with self._lock:
            backend, self._backend = self._backend, None
            self._key = self._path = None
        if backend is not None:
            backend.close()
