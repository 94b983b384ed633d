"""バックグラウンド実行用のワーカー

リクエストは asyncio.Queue に積み、決まった数のワーカータスクが1件ずつ取り出して
スレッド上でパイプラインを実行する。呼び出し側とのやり取りはプレーンなデータ
（WorkerRequest / WorkerResponse）だけで行う。
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from .config import PixelateConfig, VectorizeConfig
from .pipeline import process_image, vectorize_image

logger = logging.getLogger(__name__)


@dataclass
class WorkerRequest:
    id: str
    data: bytes
    kind: Literal["process", "vectorize"] = "process"
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkerResponse:
    type: Literal["result", "error"]
    id: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def execute_request(request: WorkerRequest) -> WorkerResponse:
    """リクエストを同期実行し、例外はメッセージとしてレスポンスに載せる"""
    start_time = time.time()
    try:
        if request.kind == "vectorize":
            result = vectorize_image(request.data, VectorizeConfig(**request.options))
            payload = {
                "svg": result.svg,
                "palette": [p.to_hex() for p in result.palette],
                "manifest": result.manifest.model_dump(),
            }
        else:
            result = process_image(request.data, PixelateConfig(**request.options))
            payload = {
                "png": result.png,
                "width": result.image.width,
                "height": result.image.height,
                "pixels": result.image.to_bytes(),
                "palette": result.palette,
                "manifest": result.manifest.model_dump(),
            }
    except Exception as exc:  # 呼び出し側にはメッセージだけを返す
        logger.error("処理に失敗しました (id=%s): %s", request.id, exc)
        return WorkerResponse(type="error", id=request.id, error=str(exc))

    logger.info("処理完了 (id=%s, %.2fs)", request.id, time.time() - start_time)
    return WorkerResponse(type="result", id=request.id, result=payload)


class PixelWorker:
    """
    パイプラインを別スレッドで実行するワーカープール

    max_workers=1 なら同時に処理するのは1件だけで、残りはキューで順番待ちになる。
    処理途中のキャンセルはできず、close() で待機中・実行中のリクエストをまとめて破棄する。
    """

    def __init__(self, max_workers: int = 1) -> None:
        if max_workers < 1:
            raise ValueError("max_workers は 1 以上を指定してください。")
        self._max_workers = max_workers
        self._queue: Optional[asyncio.Queue[Tuple[WorkerRequest, asyncio.Future]]] = None
        self._workers: List[asyncio.Task] = []

    async def __aenter__(self) -> "PixelWorker":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker()) for _ in range(self._max_workers)
        ]

    async def submit(self, request: WorkerRequest) -> WorkerResponse:
        """リクエストを積み、レスポンスが返るまで待つ"""
        if not self._workers:
            self.start()
        assert self._queue is not None
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((request, future))
        return await future

    async def run_batch(self, requests: Sequence[WorkerRequest]) -> List[WorkerResponse]:
        return list(await asyncio.gather(*(self.submit(r) for r in requests)))

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            request, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                response = await asyncio.to_thread(execute_request, request)
                if not future.done():
                    future.set_result(response)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """ワーカーを止め、待機中のリクエストをキャンセルする"""
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                future.cancel()
                self._queue.task_done()
        self._queue = None
