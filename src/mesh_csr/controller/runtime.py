"""
电平触发的控制器运行时。

- WorkQueue: 去重的工作队列。同一个键同一时间只会被一个 worker 处理，
  处理期间再次加入的键会在处理结束后重新入队；失败的键按指数退避重新入队。
- Controller: 在后台线程中 watch 资源，把通过过滤的事件转换为键加入队列，
  由若干 asyncio worker 调用协调函数。
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Set

from kubernetes import watch
from kubernetes.client import ApiException
from loguru import logger


class WorkQueue:
    """只能在事件循环线程中调用。"""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 300.0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._base_delay = base_delay
        self._max_delay = max_delay

    def __len__(self) -> int:
        return self._queue.qsize()

    def add(self, key: Hashable) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    async def get(self) -> Hashable:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Hashable) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def backoff(self, key: Hashable) -> float:
        """记录一次失败，返回下次重试前的等待秒数。"""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self._base_delay * (2 ** failures), self._max_delay)

    def add_rate_limited(self, key: Hashable) -> float:
        delay = self.backoff(key)
        asyncio.get_running_loop().call_later(delay, self.add, key)
        return delay

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)


class Controller:
    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        key_func: Callable[[Any], Hashable],
        reconcile: Callable[[Hashable], Awaitable[None]],
        *,
        predicate: Optional[Callable[[Any], bool]] = None,
        workers: int = 1,
        list_kwargs: Optional[Dict[str, Any]] = None,
        watch_timeout_seconds: int = 300,
        retry_seconds: float = 5.0,
    ) -> None:
        self.name = name
        self.queue = WorkQueue()
        self._list_func = list_func
        self._key_func = key_func
        self._reconcile = reconcile
        self._predicate = predicate
        self._workers = max(1, workers)
        self._list_kwargs = dict(list_kwargs or {})
        self._watch_timeout_seconds = watch_timeout_seconds
        self._retry_seconds = retry_seconds
        self._tasks: List[asyncio.Task] = []
        self._stop = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        # 每次启动使用新的停止信号，旧的 watch 线程不会被重新唤醒
        self._stop = threading.Event()
        threading.Thread(target=self._watch_loop, args=(self._stop,), name=f"{self.name}-watch", daemon=True).start()
        self._tasks = [asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}") for i in range(self._workers)]
        logger.info(f"控制器 {self.name} 已启动，worker 数量 {self._workers}")

    async def stop(self) -> None:
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"控制器 {self.name} 已停止")

    def handle_event(self, event: Dict[str, Any]) -> None:
        """把一个 watch 事件转换为队列中的键（可从任意线程调用）。"""
        obj = event["object"]
        if self._predicate is not None and not self._predicate(obj):
            return
        key = self._key_func(obj)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.queue.add, key)

    async def process_next(self) -> None:
        key = await self.queue.get()
        try:
            await self._reconcile(key)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.warning(f"[{self.name}] 协调 {key} 失败，{delay:.3f}s 后重试: {e}")
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)

    async def _worker(self) -> None:
        while True:
            await self.process_next()

    def _watch_loop(self, stop: threading.Event) -> None:
        # 不带 resourceVersion 的 watch 会先为现有对象产生 ADDED 事件
        resource_version: Optional[str] = None
        while not stop.is_set():
            w = watch.Watch()
            self._watch = w
            try:
                for event in w.stream(
                    self._list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._watch_timeout_seconds,
                    **self._list_kwargs,
                ):
                    if stop.is_set():
                        break
                    if event["type"] == "ERROR":
                        logger.debug(f"[{self.name}] watch 返回错误事件: {event['object']}")
                        resource_version = None
                        break
                    metadata = getattr(event["object"], "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self.handle_event(event)
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                    continue
                logger.warning(f"[{self.name}] watch 失败，{self._retry_seconds}s 后重试: {e.status} {e.reason}")
                stop.wait(self._retry_seconds)
            except Exception as e:
                logger.warning(f"[{self.name}] watch 连接异常，{self._retry_seconds}s 后重试: {e}")
                stop.wait(self._retry_seconds)
