"""
根证书 ConfigMap 的收敛逻辑。

TrustBundleEnforcer.converge 保证目标命名空间中存在名称固定的 ConfigMap，
其中 root-cert.pem 与当前根证书一致，并带有 istio.io/config=true 标签。
多次调用结果相同；内容已一致时不会写入。
"""

from __future__ import annotations

import asyncio
from typing import Callable

from kubernetes import client
from kubernetes.client import ApiException
from loguru import logger

ISTIO_CONFIG_LABEL_KEY = "istio.io/config"
ISTIO_CONFIG_LABEL_VALUE = "true"
ROOT_CERT_DATA_KEY = "root-cert.pem"

RootCAGetter = Callable[[], bytes]


class TrustBundleEnforcer:
    def __init__(self, core: client.CoreV1Api, root_ca: RootCAGetter, configmap_name: str) -> None:
        self._core = core
        self._root_ca = root_ca
        self.configmap_name = configmap_name

    async def converge(self, namespace: str) -> None:
        """
        确保 namespace 中的根证书 ConfigMap 内容与标签正确。
        :raises ApiException: 除 404 以外的读写错误。
        :raises RuntimeError: 根证书尚不可用。
        """
        root_ca = self._root_ca().decode("utf-8")
        if not root_ca.strip():
            raise RuntimeError("根证书尚不可用")

        try:
            cm = await asyncio.to_thread(self._core.read_namespaced_config_map, self.configmap_name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"ConfigMap {namespace}/{self.configmap_name} 不存在，正在创建")
            await asyncio.to_thread(
                self._core.create_namespaced_config_map,
                namespace,
                client.V1ConfigMap(
                    metadata=client.V1ObjectMeta(
                        name=self.configmap_name,
                        namespace=namespace,
                        labels={ISTIO_CONFIG_LABEL_KEY: ISTIO_CONFIG_LABEL_VALUE},
                    ),
                    data={ROOT_CERT_DATA_KEY: root_ca},
                ),
            )
            logger.info(f"已创建 ConfigMap {namespace}/{self.configmap_name}")
            return

        data = cm.data or {}
        labels = cm.metadata.labels or {}
        if data.get(ROOT_CERT_DATA_KEY) == root_ca and labels.get(ISTIO_CONFIG_LABEL_KEY) == ISTIO_CONFIG_LABEL_VALUE:
            return

        # 只覆盖本服务负责的键，保留其他数据与标签
        cm.data = {**data, ROOT_CERT_DATA_KEY: root_ca}
        cm.metadata.labels = {**labels, ISTIO_CONFIG_LABEL_KEY: ISTIO_CONFIG_LABEL_VALUE}
        logger.debug(f"ConfigMap {namespace}/{self.configmap_name} 内容或标签不一致，正在更新")
        await asyncio.to_thread(self._core.replace_namespaced_config_map, self.configmap_name, namespace, cm)
        logger.info(f"已更新 ConfigMap {namespace}/{self.configmap_name}")
