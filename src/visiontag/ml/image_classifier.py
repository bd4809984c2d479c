"""Image classification engine.

Holds one compiled ONNX model and its label table, and turns normalized HWC
tensors into ranked labels. The engine is either uninitialized or holds a
fully validated model; model and labels are published together as a single
immutable record, so re-initialization swaps both at once.
"""

from __future__ import annotations

import heapq
import logging
import math
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from visiontag.errors import DecodeError, InferenceError, LoadError, LoadStage, NotInitializedError
from visiontag.ml.model_manager import BytesModelSource, FileModelSource, parse_labels

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from visiontag.ml.model_manager import CompiledModel, ModelSource, OnnxModelCompiler

logger = logging.getLogger(__name__)

CHANNELS = 3
DEFAULT_TOP_K = 5


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class _LoadedModel:
    model: CompiledModel
    labels: tuple[str, ...]


def label_for(index: int, labels: Sequence[str]) -> str:
    """Return the label for a class index, synthesizing one if the table is short."""
    if index < len(labels):
        return labels[index]
    return f"Unknown-{index}"


def _rank_key(item: tuple[int, float]) -> tuple[bool, float, int]:
    index, score = item
    if math.isnan(score):
        return (True, 0.0, index)
    return (False, -score, index)


def rank_scores(
    scores: Sequence[float], labels: Sequence[str], top_k: int = DEFAULT_TOP_K
) -> list[ClassificationResult]:
    """Pair scores with labels and return the ``top_k`` highest.

    Ordering is descending by score, ties broken by ascending class index,
    NaN scores last.
    """
    best = heapq.nsmallest(top_k, enumerate(scores), key=_rank_key)
    return [ClassificationResult(label=label_for(index, labels), confidence=float(score)) for index, score in best]


class InferenceEngine:
    """Loads a classification model and runs single-image inference."""

    def __init__(
        self,
        compiler: OnnxModelCompiler,
        input_width: int = 224,
        input_height: int = 224,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self._compiler = compiler
        self._input_width = input_width
        self._input_height = input_height
        self._top_k = top_k
        self._lock = threading.Lock()
        self._loaded: _LoadedModel | None = None

    @property
    def is_ready(self) -> bool:
        """Whether a model has been loaded successfully."""
        return self._loaded is not None

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        """Model input shape as (batch, channels, height, width)."""
        return (1, CHANNELS, self._input_height, self._input_width)

    @property
    def tensor_length(self) -> int:
        return self._input_width * self._input_height * CHANNELS

    @property
    def labels(self) -> tuple[str, ...]:
        """Current label table (empty when uninitialized)."""
        loaded = self._loaded
        return loaded.labels if loaded is not None else ()

    # -- Lifecycle ----------------------------------------------------------

    def initialize(self, source: ModelSource) -> None:
        """Load, compile, and publish a model and its labels.

        On failure the previously published state (if any) is kept.

        Raises:
            LoadError: If the model cannot be read, compiled, or validated.
        """
        with self._lock:
            start = time.perf_counter()
            try:
                model_bytes = source.provide_model_bytes()
            except Exception as exc:
                raise LoadError(LoadStage.READ, str(exc)) from exc

            compiled = self._compiler.compile(model_bytes, self.input_shape)
            labels = self._load_labels(source)

            self._loaded = _LoadedModel(model=compiled, labels=labels)
            logger.info(
                "Model initialized in %.1f ms (input=%s, labels=%d)",
                (time.perf_counter() - start) * 1000,
                self.input_shape,
                len(labels),
            )

    def initialize_from_paths(self, model_path: str | Path, labels_path: str | Path) -> None:
        """Initialize from a model file and a label file on disk."""
        self.initialize(FileModelSource(model_path=Path(model_path), labels_path=Path(labels_path)))

    def initialize_from_bytes(self, model_bytes: bytes, label_bytes: bytes) -> None:
        """Initialize from in-memory model and label buffers."""
        self.initialize(BytesModelSource(model_bytes=model_bytes, label_bytes=label_bytes))

    def shutdown(self) -> None:
        """Release the loaded model and return to the uninitialized state."""
        with self._lock:
            self._loaded = None
            logger.info("Model released")

    # -- Inference ----------------------------------------------------------

    def classify(self, tensor: NDArray[np.float32]) -> list[ClassificationResult]:
        """Run one forward pass over a flat HWC tensor and return ranked labels.

        Raises:
            NotInitializedError: If no model has been loaded.
            DecodeError: If the tensor length does not match the input shape.
            InferenceError: If execution fails or the output is malformed.
        """
        with self._lock:
            loaded = self._loaded
            if loaded is None:
                raise NotInitializedError

            batch = self._to_model_input(tensor)

            start = time.perf_counter()
            try:
                outputs = loaded.model.session.run(
                    [loaded.model.output_name],
                    {loaded.model.input_name: batch},
                )
            except Exception as exc:
                raise InferenceError(f"Inference failed: {exc}") from exc

            scores = self._extract_scores(outputs)
            results = rank_scores(scores.tolist(), loaded.labels, self._top_k)
            logger.info("Inference completed in %.2f ms", (time.perf_counter() - start) * 1000)
            return results

    # -- Internal -----------------------------------------------------------

    def _load_labels(self, source: ModelSource) -> tuple[str, ...]:
        try:
            labels = parse_labels(source.provide_label_bytes())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to load labels, falling back to synthesized names: %s", exc)
            return ()
        logger.info("Parsed %d labels", len(labels))
        return labels

    def _to_model_input(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        flat = np.asarray(tensor, dtype=np.float32)
        if flat.ndim != 1 or flat.size != self.tensor_length:
            raise DecodeError(
                f"Input tensor has shape {flat.shape}, expected ({self.tensor_length},) "
                f"for {self._input_width}x{self._input_height} RGB"
            )
        # Flat offset (y * W + x) * 3 + c becomes model position (c, y, x).
        hwc = flat.reshape(self._input_height, self._input_width, CHANNELS)
        return np.ascontiguousarray(hwc.transpose(2, 0, 1)[np.newaxis, ...])

    @staticmethod
    def _extract_scores(outputs: Sequence[object]) -> NDArray[np.floating]:
        if not outputs:
            raise InferenceError("Model produced no outputs")

        output = outputs[0]
        if not isinstance(output, np.ndarray) or not np.issubdtype(output.dtype, np.floating):
            kind = output.dtype if isinstance(output, np.ndarray) else type(output).__name__
            raise InferenceError(f"Unexpected output element type {kind}, expected float scores")

        # Trailing singleton axes, as in (1, N, 1, 1) conv heads, flatten away.
        if output.ndim >= 2 and output.shape[0] == 1:
            return output.reshape(-1)
        if output.ndim == 1:
            return output
        raise InferenceError(f"Unexpected output shape {output.shape}, expected a single batch of class scores")
