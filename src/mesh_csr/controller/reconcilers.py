"""
两个协调器共享同一个 TrustBundleEnforcer：

- NamespaceReconciler: 命名空间创建/更新时触发，跳过已删除与正在终止的命名空间。
- ConfigMapReconciler: 名称固定的 ConfigMap 发生任何变化（包括被删除）时触发。
"""

from __future__ import annotations

import asyncio

from kubernetes import client
from kubernetes.client import ApiException
from loguru import logger

from .enforcer import TrustBundleEnforcer

NAMESPACE_TERMINATING = "Terminating"


class NamespaceReconciler:
    def __init__(self, core: client.CoreV1Api, enforcer: TrustBundleEnforcer) -> None:
        self._core = core
        self._enforcer = enforcer

    async def reconcile(self, name: str) -> None:
        try:
            ns = await asyncio.to_thread(self._core.read_namespace, name)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"命名空间 {name} 不存在，忽略")
                return
            raise RuntimeError(f"读取命名空间 {name} 失败: {e.status} {e.reason}") from e

        if ns.status is not None and ns.status.phase == NAMESPACE_TERMINATING:
            logger.debug(f"命名空间 {name} 正在终止，忽略")
            return

        await self._enforcer.converge(name)


class ConfigMapReconciler:
    def __init__(self, enforcer: TrustBundleEnforcer) -> None:
        self._enforcer = enforcer

    def admits(self, obj) -> bool:
        """事件过滤：只处理名称固定的 ConfigMap。"""
        return obj.metadata is not None and obj.metadata.name == self._enforcer.configmap_name

    async def reconcile(self, namespace: str) -> None:
        # 无论 ConfigMap 当前是否存在都进行收敛，不存在时会重新创建
        await self._enforcer.converge(namespace)
