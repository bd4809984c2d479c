"""Recognition service: the operations exposed to the API layer.

Composes one ``Preprocessor`` and one ``InferenceEngine``. Each guards its own
call path, and every blocking step is dispatched through the ``InferencePool``
so preprocessing of one request can overlap inference of another.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import TYPE_CHECKING

from visiontag.errors import DecodeError
from visiontag.ml.image_classifier import InferenceEngine
from visiontag.ml.model_manager import OnnxModelCompiler, build_model_source
from visiontag.ml.preprocessing import Preprocessor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from visiontag.config import Settings
    from visiontag.ml.image_classifier import ClassificationResult
    from visiontag.ml.inference import InferencePool
    from visiontag.ml.model_manager import ModelSource

logger = logging.getLogger(__name__)

INIT_SUCCESS_MESSAGE = "Model initialized successfully"


class RecognitionService:
    """Initializes the model and classifies images from any supported source."""

    def __init__(
        self,
        settings: Settings,
        pool: InferencePool,
        preprocessor: Preprocessor | None = None,
        engine: InferenceEngine | None = None,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self.preprocessor = preprocessor or Preprocessor(
            target_width=settings.input_width,
            target_height=settings.input_height,
            max_image_pixels=settings.max_image_pixels,
        )
        self.engine = engine or InferenceEngine(
            OnnxModelCompiler(settings),
            input_width=settings.input_width,
            input_height=settings.input_height,
            top_k=settings.top_k,
        )

    async def init_model(self, source: ModelSource | None = None) -> str:
        """Load the model from ``source`` or from the configured location."""
        resolved = source if source is not None else build_model_source(self._settings)
        await self._pool.run(self.engine.initialize, resolved)
        return INIT_SUCCESS_MESSAGE

    async def recognize_from_path(self, path: str) -> list[ClassificationResult]:
        tensor = await self._pool.run(self.preprocessor.from_path, path)
        return await self._classify(tensor)

    async def recognize_from_encoded(self, data: str) -> list[ClassificationResult]:
        tensor = await self._pool.run(self.preprocessor.from_encoded, data)
        return await self._classify(tensor)

    async def recognize_from_bytes(self, data: bytes) -> list[ClassificationResult]:
        tensor = await self._pool.run(self.preprocessor.from_bytes, data)
        return await self._classify(tensor)

    async def recognize_from_raw_frame(self, width: int, height: int, rgba: bytes) -> list[ClassificationResult]:
        tensor = await self._pool.run(self.preprocessor.from_raw_pixels, width, height, rgba)
        return await self._classify(tensor)

    async def recognize_from_encoded_frame(
        self, width: int, height: int, rgba_base64: str
    ) -> list[ClassificationResult]:
        """Like ``recognize_from_raw_frame`` with the RGBA buffer base64-encoded."""
        try:
            rgba = base64.b64decode(rgba_base64, validate=True)
        except binascii.Error as exc:
            raise DecodeError(f"Failed to decode base64 camera frame: {exc}") from exc
        return await self.recognize_from_raw_frame(width, height, rgba)

    async def _classify(self, tensor: NDArray) -> list[ClassificationResult]:
        return await self._pool.run(self.engine.classify, tensor)
