"""Shared test helpers: settings factory, fake ONNX sessions, image fixtures."""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from visiontag.config import Settings

if TYPE_CHECKING:
    from collections.abc import Sequence


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "model_source": "file",
        "models_dir": "/tmp/visiontag_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "graph_optimization": "all",
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@dataclass
class FakeNodeArg:
    name: str
    shape: list[int | str | None]
    type: str = "tensor(float)"


@dataclass
class FakeSession:
    """Stands in for ``onnxruntime.InferenceSession`` with fixed output scores."""

    scores: Sequence[float]
    input_shape: list[int | str | None] = field(default_factory=lambda: [1, 3, 224, 224])
    input_type: str = "tensor(float)"
    output: np.ndarray | None = None
    run_error: Exception | None = None
    feeds: list[dict[str, np.ndarray]] = field(default_factory=list)

    def get_inputs(self) -> list[FakeNodeArg]:
        return [FakeNodeArg(name="input", shape=self.input_shape, type=self.input_type)]

    def get_outputs(self) -> list[FakeNodeArg]:
        return [FakeNodeArg(name="output", shape=[1, len(self.scores)])]

    def run(self, output_names: list[str] | None, feed: dict[str, np.ndarray]) -> list[np.ndarray]:
        self.feeds.append(feed)
        if self.run_error is not None:
            raise self.run_error
        if self.output is not None:
            return [self.output]
        return [np.asarray([self.scores], dtype=np.float32)]


def encode_image(img: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def gray_png() -> bytes:
    """A uniform mid-gray 224x224 PNG."""
    return encode_image(Image.new("RGB", (224, 224), (128, 128, 128)))


@pytest.fixture()
def model_files(tmp_path: Path) -> tuple[Path, Path]:
    """Write a placeholder model and a two-class label file, return their paths."""
    model_path = tmp_path / "model.onnx"
    model_path.write_bytes(b"onnx-model-bytes")
    labels_path = tmp_path / "labels.txt"
    labels_path.write_text("cat\ndog\n", encoding="utf-8")
    return model_path, labels_path
