"""
后台 Embedding 任务队列

文档创建后 Embedding 不阻塞调用方: 任务进入有界 asyncio.Queue，由固定数量的
worker 协程消费。
- worker 在第一次 submit 时启动 (需要运行中的事件循环)
- 队列满时 submit 等待 (背压)，不丢任务
- join() 等待队列排空，close() 取消 worker
任务自身负责把失败写回文档 (last_embed_error)，worker 只兜底记日志。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("knowledge.tasks")

Job = Callable[[], Awaitable[object]]


class EmbeddingTaskQueue:

    def __init__(self, workers: int = 2, maxsize: int = 100):
        self._worker_count = max(1, workers)
        self._maxsize = maxsize
        self._queue: asyncio.Queue[tuple[str, Job]] | None = None
        self._workers: list[asyncio.Task] = []

    def _ensure_started(self) -> asyncio.Queue[tuple[str, Job]]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(i), name=f"kb-embed-worker-{i}")
                for i in range(self._worker_count)
            ]
            logger.info(f"[KB] 后台 Embedding worker 已启动: workers={self._worker_count}")
        return self._queue

    async def _worker(self, worker_id: int) -> None:
        assert self._queue is not None
        while True:
            name, job = await self._queue.get()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[KB] 后台任务 {name} 执行失败 (worker={worker_id}): {e}")
            finally:
                self._queue.task_done()

    async def submit(self, name: str, job: Job) -> None:
        """入队；队列满时等待空位"""
        queue = self._ensure_started()
        await queue.put((name, job))

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
