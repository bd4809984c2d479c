"""Tests for the inference pool and the recognition service wiring."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import patch

import pytest
from conftest import FakeSession, make_settings

from visiontag.errors import DecodeError, NotInitializedError
from visiontag.ml.inference import InferencePool, PoolStats
from visiontag.ml.model_manager import BytesModelSource
from visiontag.service import INIT_SUCCESS_MESSAGE, RecognitionService


class TestInferencePool:
    async def test_run_returns_result(self) -> None:
        pool = InferencePool(make_settings())
        try:
            assert await pool.run(sum, [1, 2, 3]) == 6
            assert pool.active_count == 0
            assert pool.queue_depth == 0
        finally:
            pool.shutdown()

    async def test_run_propagates_exceptions(self) -> None:
        def fail() -> None:
            raise NotInitializedError

        pool = InferencePool(make_settings())
        try:
            with pytest.raises(NotInitializedError):
                await pool.run(fail)
            assert pool.active_count == 0
            assert pool.stats().completed == 1
        finally:
            pool.shutdown()

    async def test_queue_timeout_when_all_slots_busy(self) -> None:
        release = threading.Event()
        pool = InferencePool(make_settings(max_concurrent=1, queue_timeout=0.05))
        try:
            busy = asyncio.create_task(pool.run(release.wait, 5))
            await asyncio.sleep(0.01)

            with pytest.raises(TimeoutError):
                await pool.run(int)

            assert pool.queue_depth == 0
            release.set()
            assert await busy is True
            assert pool.stats() == PoolStats(active=0, queued=0, completed=1, rejected=1)
        finally:
            release.set()
            pool.shutdown()


class TestRecognitionService:
    async def test_init_and_recognize_raw_frame(self) -> None:
        settings = make_settings()
        pool = InferencePool(settings)
        service = RecognitionService(settings, pool)
        try:
            with patch("visiontag.ml.model_manager.InferenceSession", return_value=FakeSession(scores=[0.9, 0.1])):
                message = await service.init_model(BytesModelSource(b"model", b"cat\ndog\n"))

            frame = bytes([128, 128, 128, 255]) * (32 * 32)
            results = await service.recognize_from_raw_frame(32, 32, frame)

            assert message == INIT_SUCCESS_MESSAGE
            assert [r.label for r in results] == ["cat", "dog"]
        finally:
            pool.shutdown()

    async def test_service_uses_configured_dimensions(self) -> None:
        settings = make_settings(input_width=64, input_height=32, top_k=1)
        pool = InferencePool(settings)
        service = RecognitionService(settings, pool)
        session = FakeSession(scores=[0.1, 0.7, 0.2], input_shape=[1, 3, 32, 64])
        try:
            with patch("visiontag.ml.model_manager.InferenceSession", return_value=session):
                await service.init_model(BytesModelSource(b"model", b"a\nb\nc\n"))

            results = await service.recognize_from_raw_frame(10, 10, bytes(400))

            assert [r.label for r in results] == ["b"]
            assert session.feeds[0]["input"].shape == (1, 3, 32, 64)
            assert service.preprocessor.target_size == (64, 32)
        finally:
            pool.shutdown()

    async def test_invalid_frame_base64_raises_decode_error(self) -> None:
        settings = make_settings()
        pool = InferencePool(settings)
        service = RecognitionService(settings, pool)
        try:
            with pytest.raises(DecodeError, match="camera frame"):
                await service.recognize_from_encoded_frame(2, 2, "not base64!")
        finally:
            pool.shutdown()

    async def test_recognize_before_init_raises(self) -> None:
        settings = make_settings()
        pool = InferencePool(settings)
        service = RecognitionService(settings, pool)
        try:
            with pytest.raises(NotInitializedError):
                await service.recognize_from_raw_frame(1, 1, bytes(4))
            assert not service.engine.is_ready
        finally:
            pool.shutdown()
