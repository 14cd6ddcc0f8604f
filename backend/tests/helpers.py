"""
Shared fakes for the test suite.
"""

import threading
import time
from typing import Any

import numpy as np


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeModel:
    """Minimal model handle holding numpy tensors."""

    def __init__(self, config: dict[str, Any] | None = None, weights: list[np.ndarray] | None = None):
        self.config = dict(config or {"features": 12})
        self.is_compiled = False
        self.built = False
        self.architecture = "fake"
        self._weights = weights if weights is not None else []

    def build_model(self) -> None:
        self.built = True

    def compile_model(self) -> None:
        self.is_compiled = True

    def get_weights(self) -> list[np.ndarray]:
        return list(self._weights)

    def set_weights(self, weights) -> None:
        self._weights = list(weights)


def sample_weights() -> list[np.ndarray]:
    return [
        np.arange(12, dtype=np.float32).reshape(3, 4),
        np.array([0.5, -1.25, 2.0, 3.75], dtype=np.float32),
    ]


class BlockingTrainer:
    """Training function that blocks until released."""

    def __init__(self, result=None):
        self.started = threading.Event()
        self.release = threading.Event()
        self.result = result

    def __call__(self, subject: str, variant: str, config: dict):
        self.started.set()
        self.release.wait(timeout=10)
        return self.result


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
