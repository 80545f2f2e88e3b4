"""Detector: label drawing, hentai, neutral, porn and sexy images."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from nsfwdetect.config import get_settings
from nsfwdetect.errors import InferenceError, InvalidImageError, UnsupportedFormatError
from nsfwdetect.labels import CATEGORIES, Labels
from nsfwdetect.ml.backend import build_backend
from nsfwdetect.ml.model_session import ModelSession
from nsfwdetect.ml.preprocessing import ImageNormalizer

if TYPE_CHECKING:
    from os import PathLike
    from types import TracebackType

    from nsfwdetect.config import Settings
    from nsfwdetect.ml.backend import InferenceBackend

logger = logging.getLogger(__name__)

_JPEG_MIME_TYPE = "image/jpeg"


class Detector:
    """Classifies JPEG images with a lazily loaded model.

    The model is loaded on the first classification and kept until
    :meth:`close` is called. Instances are safe to share between threads.

    Args:
        model_path: Model directory; overrides ``settings.model_path``.
        settings: Detector settings, read from the environment if omitted.
        backend: Inference backend, chosen from ``settings.backend`` if omitted.
    """

    def __init__(
        self,
        model_path: str | PathLike[str] | None = None,
        *,
        settings: Settings | None = None,
        backend: InferenceBackend | None = None,
    ) -> None:
        settings = settings if settings is not None else get_settings()
        if model_path is not None:
            settings = settings.model_copy(update={"model_path": Path(model_path)})

        self._settings = settings
        self._normalizer = ImageNormalizer(settings)
        self._session = ModelSession(settings, backend if backend is not None else build_backend(settings))

    def __enter__(self) -> Detector:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def model_path(self) -> Path:
        return self._session.model_path

    @property
    def model_tags(self) -> tuple[str, ...]:
        return self._session.tags

    @property
    def loaded(self) -> bool:
        return self._session.loaded

    @property
    def labels(self) -> tuple[str, ...]:
        return self._session.labels

    def classify_file(self, filename: str | PathLike[str]) -> Labels:
        """Return labels for a JPEG file.

        Raises:
            UnsupportedFormatError: If the file name does not denote a JPEG.
            InvalidImageError: If the file exceeds the size limit or cannot be decoded.
            OSError: If the file cannot be read.
        """
        path = Path(filename)
        mime_type, _ = mimetypes.guess_type(path.name)
        if mime_type != _JPEG_MIME_TYPE:
            raise UnsupportedFormatError(f'"{path}" is not a jpeg file')

        size = path.stat().st_size
        if size > self._settings.max_file_size:
            raise InvalidImageError(f'"{path}" is {size} bytes, limit is {self._settings.max_file_size}')

        return self.classify_bytes(path.read_bytes())

    def classify_bytes(self, image_bytes: bytes) -> Labels:
        """Return labels for JPEG-encoded image data.

        Raises:
            ModelLoadError: If the model cannot be loaded.
            InvalidImageError: If the data is not a decodable JPEG.
            InferenceError: If the model fails or returns no usable scores.
        """
        self._session.ensure_loaded()

        tensor = self._normalizer.normalize(image_bytes, "jpeg")
        outputs = self._session.infer(tensor)

        scores = np.asarray(outputs[0])
        if scores.ndim != 2 or scores.shape[0] < 1 or scores.shape[1] < len(CATEGORIES):
            raise InferenceError(f"unexpected output shape {scores.shape}")

        result = Labels.from_vector(scores[0])
        logger.debug("Image classified as %s", result)
        return result

    def close(self) -> None:
        """Release the model. The detector cannot be used afterwards."""
        self._session.close()
