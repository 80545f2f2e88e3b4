"""Model session: lazily load the classification model and run inference.

The backend handle and the label names are loaded together on first use and
kept until the session is closed. Loading happens under a lock, so concurrent
first calls load the artifact exactly once.
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download

from nsfwdetect.errors import InferenceError, ModelLoadError
from nsfwdetect.labels import CATEGORIES, load_labels

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from nsfwdetect.config import Settings
    from nsfwdetect.ml.backend import BackendSession, InferenceBackend

logger = logging.getLogger(__name__)


class ModelSession:
    """Owns the backend handle and the label names of one model artifact."""

    def __init__(self, settings: Settings, backend: InferenceBackend) -> None:
        self._settings = settings
        self._backend = backend
        self._model_path = Path(settings.model_path)
        self._tags = tuple(settings.model_tags)

        self._lock = threading.Lock()
        self._infer_lock = threading.Lock() if settings.serialize_inference else None
        self._handle: BackendSession | None = None
        self._labels: tuple[str, ...] = ()
        self._closed = False

    # -- Public API ---------------------------------------------------------

    @property
    def model_path(self) -> Path:
        return self._model_path

    @property
    def tags(self) -> tuple[str, ...]:
        return self._tags

    @property
    def loaded(self) -> bool:
        return self._handle is not None

    @property
    def labels(self) -> tuple[str, ...]:
        """Label names read from the sidecar file; empty until loaded."""
        return self._labels

    def ensure_downloaded(self) -> Path:
        """Fetch missing artifact files from the Hugging Face Hub.

        Does nothing unless ``model_repo_id`` is configured.
        """
        repo_id = self._settings.model_repo_id
        if repo_id is None:
            return self._model_path

        filenames = [*self._backend.artifact_files(), self._settings.labels_file]
        missing = [name for name in filenames if not (self._model_path / name).exists()]
        for filename in missing:
            downloaded = hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                local_dir=str(self._model_path),
            )
            logger.info("Downloaded %s to %s", filename, downloaded)
        return self._model_path

    def ensure_loaded(self) -> None:
        """Load the model and labels unless already loaded.

        Raises:
            ModelLoadError: If the artifact or label file cannot be loaded.
                The session stays unloaded, so a later call retries.
        """
        if self._handle is not None:
            return

        with self._lock:
            if self._closed:
                raise ModelLoadError("Model session is closed")
            # Double-check: another thread may have loaded it while we waited.
            if self._handle is not None:
                return
            self._load()

    def infer(self, tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        """Run one forward pass and return the backend's output tensors.

        Raises:
            ModelLoadError: If the session has been closed.
            InferenceError: If the session is not loaded, the backend fails,
                or no output tensor is returned.
        """
        handle = self._handle
        if handle is None:
            if self._closed:
                raise ModelLoadError("Model session is closed")
            raise InferenceError("Model is not loaded")

        guard = self._infer_lock if self._infer_lock is not None else nullcontext()
        with guard:
            try:
                outputs = handle.run({self._settings.input_name: tensor}, [self._settings.output_name])
            except Exception as exc:
                raise InferenceError("could not run inference") from exc

        if not outputs:
            raise InferenceError("result is empty")
        return outputs

    def close(self) -> None:
        """Release the backend handle. Further loads are refused."""
        with self._lock:
            self._closed = True
            handle, self._handle = self._handle, None
            self._labels = ()
        if handle is not None:
            handle.close()
            logger.info("Closed model session for %s", self._model_path.name)

    # -- Internal -----------------------------------------------------------

    def _load(self) -> None:
        logger.info("Loading image classification model from %s", self._model_path.name)
        try:
            model_path = self.ensure_downloaded()
            handle = self._backend.load(model_path, self._tags)
        except Exception as exc:
            raise ModelLoadError(f"Could not load model from {self._model_path}: {exc}") from exc

        labels_path = model_path / self._settings.labels_file
        logger.info("Loading classification labels from %s", labels_path.name)
        try:
            labels = load_labels(labels_path)
        except (OSError, UnicodeDecodeError) as exc:
            handle.close()
            raise ModelLoadError(f"Could not read labels from {labels_path}: {exc}") from exc

        if tuple(label.lower() for label in labels) != CATEGORIES:
            logger.warning(
                "Labels in %s %s do not match the model output order %s",
                labels_path.name,
                list(labels),
                list(CATEGORIES),
            )

        self._labels = labels
        self._handle = handle
