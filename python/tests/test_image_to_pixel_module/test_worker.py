"""ワーカーのテスト"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# python ディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import pytest

from image_to_pixel.worker import PixelWorker, WorkerRequest, execute_request


class TestExecuteRequest:
    """同期実行のテスト"""

    def test_process_result_payload(self, checker_png):
        response = execute_request(WorkerRequest(id="a", data=checker_png))

        assert response.type == "result"
        assert response.id == "a"
        assert response.result["width"] == 8
        assert response.result["height"] == 8
        assert len(response.result["pixels"]) == 8 * 8 * 4
        assert response.result["manifest"]["processing_steps"]["scale_detection"]["detected_scale"] == 4

    def test_options_accept_camel_case(self, checker_png):
        request = WorkerRequest(id="b", data=checker_png, options={"manualScale": 2})
        response = execute_request(request)
        assert response.result["width"] == 16

    def test_vectorize_kind(self, checker_png):
        response = execute_request(WorkerRequest(id="c", data=checker_png, kind="vectorize"))
        assert response.type == "result"
        assert response.result["svg"].startswith("<svg")
        assert sorted(response.result["palette"]) == ["#0000ff", "#ff0000"]

    def test_error_is_returned_as_message(self):
        response = execute_request(WorkerRequest(id="d", data=b"broken"))
        assert response.type == "error"
        assert response.result is None
        assert response.error

    def test_invalid_options_are_errors(self, checker_png):
        response = execute_request(WorkerRequest(id="e", data=checker_png, options={"maxColors": 1}))
        assert response.type == "error"


class TestPixelWorker:
    """PixelWorker のテスト"""

    def test_submit(self, checker_png):
        async def run():
            async with PixelWorker() as worker:
                assert worker.running
                return await worker.submit(WorkerRequest(id="x", data=checker_png))

        response = asyncio.run(run())
        assert response.type == "result"
        assert response.result["width"] == 8

    def test_batch_keeps_order(self, checker_png):
        requests = [
            WorkerRequest(id="1", data=checker_png),
            WorkerRequest(id="2", data=b"broken"),
            WorkerRequest(id="3", data=checker_png, kind="vectorize"),
        ]

        async def run():
            async with PixelWorker(max_workers=2) as worker:
                return await worker.run_batch(requests)

        responses = asyncio.run(run())
        assert [r.id for r in responses] == ["1", "2", "3"]
        assert [r.type for r in responses] == ["result", "error", "result"]

    def test_close_stops_workers(self):
        async def run():
            worker = PixelWorker()
            worker.start()
            await worker.close()
            return worker.running

        assert asyncio.run(run()) is False

    def test_invalid_pool_size(self):
        with pytest.raises(ValueError):
            PixelWorker(max_workers=0)
