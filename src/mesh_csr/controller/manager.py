"""
组装根证书分发控制器：命名空间控制器与 ConfigMap 控制器共享同一个 TrustBundleEnforcer。
"""

from __future__ import annotations

import asyncio
from typing import List

from kubernetes import client
from loguru import logger

from .enforcer import RootCAGetter, TrustBundleEnforcer
from .reconcilers import ConfigMapReconciler, NamespaceReconciler
from .runtime import Controller


def build_ca_root_controllers(
    core: client.CoreV1Api,
    root_ca: RootCAGetter,
    configmap_name: str,
    workers: int = 1,
) -> List[Controller]:
    enforcer = TrustBundleEnforcer(core, root_ca, configmap_name)
    namespaces = NamespaceReconciler(core, enforcer)
    configmaps = ConfigMapReconciler(enforcer)

    namespace_controller = Controller(
        "namespace",
        core.list_namespace,
        key_func=lambda obj: obj.metadata.name,
        reconcile=namespaces.reconcile,
        workers=workers,
    )
    configmap_controller = Controller(
        "configmap",
        core.list_config_map_for_all_namespaces,
        key_func=lambda obj: obj.metadata.namespace,
        reconcile=configmaps.reconcile,
        predicate=configmaps.admits,
        workers=workers,
        list_kwargs={"field_selector": f"metadata.name={configmap_name}"},
    )
    return [namespace_controller, configmap_controller]


class ControllerGroup:
    """一组一起启动、一起停止的控制器。"""

    def __init__(self, controllers: List[Controller]) -> None:
        self._controllers = controllers
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        for c in self._controllers:
            c.start()
        self.running = True
        logger.info(f"已启动控制器: {[c.name for c in self._controllers]}")

    async def stop(self) -> None:
        if not self.running:
            return
        await asyncio.gather(*(c.stop() for c in self._controllers))
        self.running = False
