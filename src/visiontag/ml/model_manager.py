"""Model manager: resolve, compile, and validate ONNX classification models.

Model and label bytes come from a ``ModelSource`` (local files, in-memory
buffers, or a HuggingFace Hub download). ``OnnxModelCompiler`` turns the model
bytes into an optimized ``InferenceSession`` whose single input is pinned to
the engine's ``(1, 3, H, W)`` float32 shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from visiontag.errors import LoadError, LoadStage

if TYPE_CHECKING:
    from visiontag.config import Settings

logger = logging.getLogger(__name__)

FLOAT_TENSOR_TYPE = "tensor(float)"

_OPTIMIZATION_LEVELS: dict[str, GraphOptimizationLevel] = {
    "disabled": GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": GraphOptimizationLevel.ORT_ENABLE_ALL,
}


# ---------------------------------------------------------------------------
# Model sources
# ---------------------------------------------------------------------------


class ModelSource(Protocol):
    """Supplies serialized model and label-table bytes."""

    def provide_model_bytes(self) -> bytes:
        """Return the serialized ONNX graph."""
        ...

    def provide_label_bytes(self) -> bytes:
        """Return newline-delimited UTF-8 class names in index order."""
        ...


@dataclass(frozen=True)
class FileModelSource:
    """Model and labels stored as plain files on disk."""

    model_path: Path
    labels_path: Path

    def provide_model_bytes(self) -> bytes:
        logger.info("Loading model from %s", self.model_path)
        return Path(self.model_path).read_bytes()

    def provide_label_bytes(self) -> bytes:
        logger.info("Loading labels from %s", self.labels_path)
        return Path(self.labels_path).read_bytes()


@dataclass(frozen=True)
class BytesModelSource:
    """Model and labels already held in memory (bundled resources)."""

    model_bytes: bytes
    label_bytes: bytes

    def provide_model_bytes(self) -> bytes:
        return self.model_bytes

    def provide_label_bytes(self) -> bytes:
        return self.label_bytes


class HubModelSource:
    """Downloads model and labels from a HuggingFace Hub repository."""

    def __init__(
        self,
        repo_id: str,
        model_filename: str,
        labels_filename: str,
        models_dir: str | Path,
    ) -> None:
        self._repo_id = repo_id
        self._model_filename = model_filename
        self._labels_filename = labels_filename
        self._models_dir = Path(models_dir)
        self._paths: dict[str, Path] = {}

    def provide_model_bytes(self) -> bytes:
        return self.ensure_downloaded(self._model_filename).read_bytes()

    def provide_label_bytes(self) -> bytes:
        return self.ensure_downloaded(self._labels_filename).read_bytes()

    def ensure_downloaded(self, filename: str) -> Path:
        """Download a file from the Hub if not already present locally."""
        path = self._paths.get(filename)
        if path is not None and path.exists():
            return path

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=self._repo_id,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )
        self._paths[filename] = downloaded
        logger.info("Downloaded %s from %s to %s", filename, self._repo_id, downloaded)
        return downloaded


def build_model_source(settings: Settings) -> ModelSource:
    """Resolve the configured model source."""
    if settings.model_source == "hub":
        if not settings.hub_repo_id:
            raise LoadError(LoadStage.READ, "VISIONTAG_HUB_REPO_ID must be set when model_source is 'hub'")
        return HubModelSource(
            repo_id=settings.hub_repo_id,
            model_filename=settings.hub_model_filename,
            labels_filename=settings.hub_labels_filename,
            models_dir=settings.models_dir,
        )
    return FileModelSource(
        model_path=Path(settings.model_path),
        labels_path=Path(settings.labels_path),
    )


def parse_labels(data: bytes) -> tuple[str, ...]:
    """Split a label file into trimmed lines, preserving class index order."""
    return tuple(line.strip() for line in data.decode("utf-8").splitlines())


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompiledModel:
    """A runnable session plus the tensor names used to drive it."""

    session: InferenceSession
    input_name: str
    output_name: str


class OnnxModelCompiler:
    """Builds validated ONNX Runtime sessions for a fixed input shape."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._providers = self._build_providers()

    def compile(self, model_bytes: bytes, input_shape: tuple[int, int, int, int]) -> CompiledModel:
        """Compile ``model_bytes`` and check it accepts ``input_shape`` float32 input.

        Raises:
            LoadError: If the graph cannot be compiled or its input/output
                signature does not match.
        """
        if not model_bytes:
            raise LoadError(LoadStage.READ, "model source is empty")

        session = self._create_session(model_bytes, {})
        overrides = self._free_dimension_overrides(session, input_shape)
        if overrides:
            # Pin symbolic dimensions so the optimizer sees a static shape.
            logger.info("Pinning free input dimensions %s", overrides)
            session = self._create_session(model_bytes, overrides)

        input_name = self._validate_input(session, input_shape)
        outputs = session.get_outputs()
        if not outputs:
            raise LoadError(LoadStage.OUTPUT, "model declares no outputs")

        return CompiledModel(session=session, input_name=input_name, output_name=outputs[0].name)

    # -- Internal -----------------------------------------------------------

    def _create_session(self, model_bytes: bytes, overrides: dict[str, int]) -> InferenceSession:
        opts = self._build_session_options()
        for name, value in overrides.items():
            opts.add_free_dimension_override_by_name(name, value)
        try:
            return InferenceSession(
                model_bytes,
                sess_options=opts,
                providers=self._providers,
            )
        except Exception as exc:
            raise LoadError(LoadStage.COMPILE, str(exc)) from exc

    @staticmethod
    def _free_dimension_overrides(
        session: InferenceSession, input_shape: tuple[int, int, int, int]
    ) -> dict[str, int]:
        inputs = session.get_inputs()
        if len(inputs) != 1 or len(inputs[0].shape) != len(input_shape):
            return {}
        return {
            dim: expected
            for dim, expected in zip(inputs[0].shape, input_shape, strict=True)
            if isinstance(dim, str)
        }

    @staticmethod
    def _validate_input(session: InferenceSession, input_shape: tuple[int, int, int, int]) -> str:
        inputs = session.get_inputs()
        if len(inputs) != 1:
            raise LoadError(LoadStage.INPUT, f"expected exactly one input, model declares {len(inputs)}")

        model_input = inputs[0]
        if model_input.type != FLOAT_TENSOR_TYPE:
            raise LoadError(LoadStage.INPUT, f"input '{model_input.name}' has type {model_input.type}, expected float32")

        shape = list(model_input.shape)
        if len(shape) != len(input_shape):
            raise LoadError(LoadStage.INPUT, f"input '{model_input.name}' has rank {len(shape)}, expected 4")

        for dim, expected in zip(shape, input_shape, strict=True):
            if isinstance(dim, int) and dim != expected:
                raise LoadError(
                    LoadStage.INPUT,
                    f"input '{model_input.name}' has shape {shape}, expected {list(input_shape)}",
                )
        return str(model_input.name)

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
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        else:
            opts.graph_optimization_level = _OPTIMIZATION_LEVELS[self._settings.graph_optimization]
        return opts
