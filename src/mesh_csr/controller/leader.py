"""
基于 ConfigMap 锁的选主。只有当选的副本运行控制器；证书签发不受选主限制。

kubernetes.leaderelection 是阻塞式实现，这里在守护线程中运行，
并把开始/停止领导的回调转发到事件循环。失去领导后会重新参与竞选。
"""

from __future__ import annotations

import asyncio
import socket
import threading
import uuid
from typing import Awaitable, Callable, Optional

from kubernetes.leaderelection import electionconfig, leaderelection
from kubernetes.leaderelection.resourcelock.configmaplock import ConfigMapLock
from loguru import logger


def default_identity() -> str:
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"


class LeaderElector:
    def __init__(
        self,
        namespace: str,
        name: str,
        on_started_leading: Callable[[], Awaitable[None]],
        on_stopped_leading: Callable[[], Awaitable[None]],
        *,
        identity: Optional[str] = None,
        lease_duration: int = 15,
        renew_deadline: int = 10,
        retry_period: int = 2,
    ) -> None:
        self.namespace = namespace
        self.name = name
        self.identity = identity or default_identity()
        self._on_started_leading = on_started_leading
        self._on_stopped_leading = on_stopped_leading
        self._lease_duration = lease_duration
        self._renew_deadline = renew_deadline
        self._retry_period = retry_period
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._run, name="leader-election", daemon=True)
        self._thread.start()
        logger.info(f"参与选主: lock={self.namespace}/{self.name}, identity={self.identity}")

    def stop(self, join_timeout: float = 1.0) -> bool:
        """
        停止参与竞选并等待至多 join_timeout 秒。
        LeaderElection.run() 在获取或续约租约期间不会检查停止信号，
        此时线程要到 run() 返回后才退出；守护线程不会阻止进程退出。
        :return: 线程是否已经退出。
        """
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is None:
            return True
        if thread is threading.current_thread():
            return False
        thread.join(join_timeout)
        return not thread.is_alive()

    def _started(self) -> None:
        logger.info(f"{self.identity} 成为主副本")
        self._submit(self._on_started_leading)

    def _stopped(self) -> None:
        logger.warning(f"{self.identity} 失去主副本身份")
        self._submit(self._on_stopped_leading)

    def _submit(self, callback: Callable[[], Awaitable[None]]) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(callback(), self._loop)

    def _run(self) -> None:
        while not self._stop.is_set():
            config = electionconfig.Config(
                ConfigMapLock(self.name, self.namespace, self.identity),
                lease_duration=self._lease_duration,
                renew_deadline=self._renew_deadline,
                retry_period=self._retry_period,
                onstarted_leading=self._started,
                onstopped_leading=self._stopped,
            )
            try:
                leaderelection.LeaderElection(config).run()
            except Exception as e:
                logger.warning(f"选主过程异常，{self._retry_period}s 后重试: {e}")
            self._stop.wait(self._retry_period)
