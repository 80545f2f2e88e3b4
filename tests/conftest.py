"""Shared fixtures: in-memory images, model directories and a stub backend."""

from __future__ import annotations

import io
import threading
import time
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from nsfwdetect.config import Settings

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from numpy.typing import NDArray

LABELS_TXT = "drawing\nhentai\nneutral\nporn\nsexy\n\n"


def make_image_bytes(width: int, height: int, image_format: str = "JPEG", *, noise: bool = False) -> bytes:
    if noise:
        rng = np.random.default_rng(0)
        img = Image.fromarray(rng.integers(0, 256, (height, width, 3), dtype=np.uint8), "RGB")
    else:
        img = Image.new("RGB", (width, height), (120, 80, 200))
    buf = io.BytesIO()
    img.save(buf, format=image_format)
    return buf.getvalue()


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "model_path": "/tmp/nsfwdetect_test_model",
        "model_tags": ["serve"],
        "device": "cpu",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "model_repo_id": None,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


class StubSession:
    """Backend session returning a fixed list of outputs."""

    def __init__(self, outputs: list[NDArray[np.float64]], error: Exception | None = None) -> None:
        self.outputs = outputs
        self.error = error
        self.calls: list[tuple[dict[str, NDArray[np.float32]], list[str]]] = []
        self.closed = 0

    def run(self, inputs: Mapping[str, NDArray[np.float32]], outputs: Sequence[str]) -> list[NDArray[np.float64]]:
        self.calls.append((dict(inputs), list(outputs)))
        if self.error is not None:
            raise self.error
        return self.outputs

    def close(self) -> None:
        self.closed += 1


class StubBackend:
    """Counts loads; optionally slow or failing."""

    def __init__(
        self,
        outputs: list[NDArray[np.float64]] | None = None,
        *,
        load_delay: float = 0.0,
        load_error: Exception | None = None,
        run_error: Exception | None = None,
    ) -> None:
        if outputs is None:
            outputs = [np.array([[0.1, 0.2, 0.3, 0.2, 0.2]])]
        self.session = StubSession(outputs, run_error)
        self.load_delay = load_delay
        self.load_error = load_error
        self.load_count = 0
        self.load_args: list[tuple[Path, tuple[str, ...]]] = []
        self._lock = threading.Lock()

    def artifact_files(self) -> list[str]:
        return ["model.onnx"]

    def load(self, model_path: Path, tags: Sequence[str]) -> StubSession:
        with self._lock:
            self.load_count += 1
            self.load_args.append((model_path, tuple(tags)))
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error
        return self.session


@pytest.fixture()
def model_dir(tmp_path: Path) -> Path:
    """A model directory holding a label file."""
    (tmp_path / "labels.txt").write_text(LABELS_TXT, encoding="utf-8")
    return tmp_path


@pytest.fixture()
def jpeg_bytes() -> bytes:
    return make_image_bytes(64, 48)
