"""
cert-manager CertificateRequest 的存取与观察。

- CertificateRequestStore: 基于 CustomObjectsApi 的创建/读取/删除，同步调用通过 asyncio.to_thread 执行。
- CertificateRequestWatcher: 每个进程一个 watch 流（后台线程），按名称把事件分发给等待中的请求。
- wait_for_certificate_request: 等待资源进入终止状态；没有事件到达时按轮询间隔回退为 GET。
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Dict, List, Optional

from kubernetes import client, watch
from kubernetes.client import ApiException
from loguru import logger

from ..server.errors import IssuanceError
from .schemas import GROUP, PLURAL, VERSION, CertificateRequest


class CertificateRequestStore:
    """单个命名空间内的 CertificateRequest 存取。"""

    def __init__(self, api: client.CustomObjectsApi, namespace: str) -> None:
        self._api = api
        self.namespace = namespace

    async def create(self, body: dict) -> CertificateRequest:
        obj = await asyncio.to_thread(
            self._api.create_namespaced_custom_object, GROUP, VERSION, self.namespace, PLURAL, body
        )
        return CertificateRequest.from_object(obj)

    async def get(self, name: str) -> CertificateRequest:
        obj = await asyncio.to_thread(
            self._api.get_namespaced_custom_object, GROUP, VERSION, self.namespace, PLURAL, name
        )
        return CertificateRequest.from_object(obj)

    async def delete(self, name: str) -> None:
        """删除资源；资源已不存在时视为成功。"""
        try:
            await asyncio.to_thread(
                self._api.delete_namespaced_custom_object, GROUP, VERSION, self.namespace, PLURAL, name
            )
        except ApiException as e:
            if e.status != 404:
                raise

    def list_objects(self, **kwargs):
        """供 watch.Watch().stream 调用的列表函数。"""
        return self._api.list_namespaced_custom_object(GROUP, VERSION, self.namespace, PLURAL, **kwargs)


class CertificateRequestWatcher:
    """
    在后台线程中持续 watch CertificateRequest，并把事件投递到订阅者的 asyncio.Queue。
    watch 不可用时订阅者收不到事件，等待逻辑会自动回退为轮询。
    """

    def __init__(self, store: CertificateRequestStore, timeout_seconds: int = 60, retry_seconds: float = 5.0) -> None:
        self._store = store
        self._timeout_seconds = timeout_seconds
        self._retry_seconds = retry_seconds
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watch: Optional[watch.Watch] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop,), name="certificaterequest-watch", daemon=True
        )
        self._thread.start()
        logger.info(f"CertificateRequest watch 已启动: namespace={self._store.namespace}")

    def stop(self, join_timeout: float = 1.0) -> bool:
        """
        通知 watch 线程退出并等待至多 join_timeout 秒。
        正在阻塞读取的流要到下一个事件或服务端超时才会返回，因此线程可能晚于本方法结束。
        :return: 线程是否已经退出。
        """
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()
        thread, self._thread = self._thread, None
        if thread is None:
            return True
        thread.join(join_timeout)
        return not thread.is_alive()

    def subscribe(self, name: str) -> asyncio.Queue:
        """只能在事件循环线程中调用。"""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.setdefault(name, []).append(queue)
        return queue

    def unsubscribe(self, name: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._subscribers.get(name, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(name, None)

    def dispatch(self, obj: dict) -> None:
        """把一个资源对象投递给按名称订阅的队列（可从任意线程调用）。"""
        cr = CertificateRequest.from_object(obj)
        with self._lock:
            queues = list(self._subscribers.get(cr.name, []))
        if not queues or self._loop is None:
            return
        for queue in queues:
            self._loop.call_soon_threadsafe(queue.put_nowait, cr)

    def _run(self, stop: threading.Event) -> None:
        resource_version: Optional[str] = None
        while not stop.is_set():
            w = watch.Watch()
            self._watch = w
            try:
                for event in w.stream(
                    self._store.list_objects,
                    resource_version=resource_version,
                    timeout_seconds=self._timeout_seconds,
                ):
                    if stop.is_set():
                        break
                    obj = event["object"]
                    if event["type"] == "ERROR":
                        # 410 Gone：resourceVersion 过期，从头开始
                        logger.debug(f"CertificateRequest watch 返回错误事件: {obj}")
                        resource_version = None
                        break
                    resource_version = (obj.get("metadata") or {}).get("resourceVersion", resource_version)
                    if event["type"] in ("ADDED", "MODIFIED"):
                        self.dispatch(obj)
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                    continue
                logger.warning(f"CertificateRequest watch 失败，{self._retry_seconds}s 后重试: {e.status} {e.reason}")
                stop.wait(self._retry_seconds)
            except Exception as e:
                logger.warning(f"CertificateRequest watch 连接异常，{self._retry_seconds}s 后重试: {e}")
                stop.wait(self._retry_seconds)
        logger.info("CertificateRequest watch 已停止")


async def wait_for_certificate_request(
    store: CertificateRequestStore,
    name: str,
    *,
    timeout: timedelta,
    poll_interval: timedelta,
    watcher: Optional[CertificateRequestWatcher] = None,
) -> CertificateRequest:
    """
    等待 CertificateRequest 就绪。
    :return: Ready=True 时的资源。
    :raises IssuanceError: 资源进入失败状态或等待超时。
    :raises asyncio.CancelledError: 调用方取消时原样传播。
    """
    queue = watcher.subscribe(name) if watcher is not None else None
    try:
        return await asyncio.wait_for(
            _wait_until_terminal(store, name, queue, poll_interval.total_seconds()),
            timeout=timeout.total_seconds(),
        )
    except asyncio.TimeoutError:
        raise IssuanceError(f"等待 CertificateRequest {store.namespace}/{name} 就绪超时 ({timeout})")
    finally:
        if watcher is not None and queue is not None:
            watcher.unsubscribe(name, queue)


async def _poll(store: CertificateRequestStore, name: str) -> Optional[CertificateRequest]:
    """
    读取一次资源。临时性错误只记录日志并返回 None，由调用方继续等待。
    :raises IssuanceError: 资源已不存在。
    """
    try:
        return await store.get(name)
    except ApiException as e:
        if e.status == 404:
            raise IssuanceError(f"CertificateRequest {store.namespace}/{name} 已被删除")
        logger.warning(f"读取 CertificateRequest {store.namespace}/{name} 失败，继续等待: {e.status} {e.reason}")
        return None


async def _wait_until_terminal(
    store: CertificateRequestStore,
    name: str,
    queue: Optional[asyncio.Queue],
    poll_seconds: float,
) -> CertificateRequest:
    # 订阅之后先读一次，覆盖创建与订阅之间错过的事件
    cr = await _poll(store, name)
    while True:
        if cr is not None:
            if cr.status.ready:
                return cr
            failure = cr.status.failure
            if failure is not None:
                raise IssuanceError(f"CertificateRequest {store.namespace}/{name} 签发失败: {failure}")

        if queue is None:
            await asyncio.sleep(poll_seconds)
            cr = await _poll(store, name)
            continue
        try:
            cr = await asyncio.wait_for(queue.get(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            cr = await _poll(store, name)
