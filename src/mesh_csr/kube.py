"""
Kubernetes 客户端构造。

优先使用集群内配置（ServiceAccount 挂载的凭据），失败时回退到 kubeconfig。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from kubernetes import client, config as kube_config
from loguru import logger


@dataclass
class KubeClients:
    """进程内共享的一组 API 客户端。"""

    core: client.CoreV1Api
    custom: client.CustomObjectsApi
    authentication: client.AuthenticationV1Api
    api_client: client.ApiClient


def load_kube_clients(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> KubeClients:
    """
    加载集群配置并构造客户端。
    :raises RuntimeError: 集群内配置与 kubeconfig 都不可用时。
    """
    if kubeconfig is None and context is None:
        try:
            kube_config.load_incluster_config()
            logger.info("已加载集群内 Kubernetes 配置")
            return _build_clients()
        except kube_config.ConfigException:
            logger.debug("不在集群内运行，回退到 kubeconfig")

    try:
        kube_config.load_kube_config(config_file=kubeconfig, context=context)
    except (kube_config.ConfigException, OSError) as e:
        raise RuntimeError(f"无法构造 Kubernetes 客户端: {e}") from e
    logger.info(f"已加载 kubeconfig: {kubeconfig or '[default]'}, context={context or '[current]'}")
    return _build_clients()


def _build_clients() -> KubeClients:
    api_client = client.ApiClient()
    return KubeClients(
        core=client.CoreV1Api(api_client),
        custom=client.CustomObjectsApi(api_client),
        authentication=client.AuthenticationV1Api(api_client),
        api_client=api_client,
    )
