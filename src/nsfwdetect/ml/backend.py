"""Inference backends: load a model artifact and run forward passes.

The detector only needs two things from a backend: load an artifact from a
directory with a set of serving tags, and run one named input through the
graph to a list of named outputs. ONNX Runtime is the default engine;
TensorFlow SavedModel directories are supported when TensorFlow is installed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from numpy.typing import NDArray

    from nsfwdetect.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols (kept for test stubs)
# ---------------------------------------------------------------------------


class BackendSession(Protocol):
    """A loaded model ready to run forward passes."""

    def run(self, inputs: Mapping[str, NDArray[np.float32]], outputs: Sequence[str]) -> list[NDArray[np.float32]]:
        """Bind named inputs, compute the requested outputs and return them in order."""
        ...

    def close(self) -> None:
        """Release the resources held by the session."""
        ...


class InferenceBackend(Protocol):
    """Protocol for model loading engines."""

    def load(self, model_path: Path, tags: Sequence[str]) -> BackendSession:
        """Load the artifact stored in ``model_path`` under the given serving tags."""
        ...

    def artifact_files(self) -> list[str]:
        """Return artifact file names, relative to the model directory."""
        ...


# ---------------------------------------------------------------------------
# ONNX Runtime
# ---------------------------------------------------------------------------


class _OnnxSession:
    def __init__(self, session: InferenceSession) -> None:
        self._session: InferenceSession | None = session

    def run(self, inputs: Mapping[str, NDArray[np.float32]], outputs: Sequence[str]) -> list[NDArray[np.float32]]:
        if self._session is None:
            raise RuntimeError("ONNX session is closed")
        return list(self._session.run(list(outputs), dict(inputs)))

    def close(self) -> None:
        # InferenceSession frees its native memory once the last reference goes.
        self._session = None


class OnnxBackend:
    """Loads ONNX exports of the classification model with ONNX Runtime."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    def artifact_files(self) -> list[str]:
        return [self._settings.onnx_file]

    def load(self, model_path: Path, tags: Sequence[str]) -> BackendSession:
        model_file = model_path / self._settings.onnx_file
        if not model_file.is_file():
            raise FileNotFoundError(f"ONNX model not found: {model_file}")

        session = InferenceSession(
            str(model_file),
            sess_options=self._session_options,
            providers=self._providers,
        )
        self._check_tags(session, tags)
        return _OnnxSession(session)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _check_tags(session: InferenceSession, tags: Sequence[str]) -> None:
        """Match requested tags against the ``tags`` metadata entry, if the export has one."""
        metadata = session.get_modelmeta().custom_metadata_map
        declared = metadata.get("tags")
        if declared is None:
            return
        available = {tag.strip() for tag in declared.split(",") if tag.strip()}
        missing = [tag for tag in tags if tag not in available]
        if missing:
            raise ValueError(f"Model does not provide serving tags {missing} (available: {sorted(available)})")

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# TensorFlow SavedModel
# ---------------------------------------------------------------------------


class _SavedModelSession:
    def __init__(self, graph: object, session: object) -> None:
        self._graph = graph
        self._session = session

    def run(self, inputs: Mapping[str, NDArray[np.float32]], outputs: Sequence[str]) -> list[NDArray[np.float32]]:
        feed = {self._graph.get_tensor_by_name(f"{name}:0"): value for name, value in inputs.items()}  # type: ignore[attr-defined]
        fetches = [self._graph.get_tensor_by_name(f"{name}:0") for name in outputs]  # type: ignore[attr-defined]
        values = self._session.run(fetches, feed_dict=feed)  # type: ignore[attr-defined]
        return [np.asarray(value) for value in values]

    def close(self) -> None:
        self._session.close()  # type: ignore[attr-defined]


class SavedModelBackend:
    """Loads TensorFlow SavedModel directories (install the ``saved-model`` extra)."""

    def artifact_files(self) -> list[str]:
        return [
            "saved_model.pb",
            "variables/variables.index",
            "variables/variables.data-00000-of-00001",
        ]

    def load(self, model_path: Path, tags: Sequence[str]) -> BackendSession:
        import tensorflow as tf

        graph = tf.Graph()
        session = tf.compat.v1.Session(graph=graph)
        try:
            with graph.as_default():
                tf.compat.v1.saved_model.loader.load(session, list(tags), str(model_path))
        except Exception:
            session.close()
            raise
        return _SavedModelSession(graph, session)


def build_backend(settings: Settings) -> InferenceBackend:
    """Return the backend selected by ``settings.backend``."""
    if settings.backend == "saved_model":
        return SavedModelBackend()
    return OnnxBackend(settings)
