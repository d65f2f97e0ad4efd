"""
FastAPI 应用入口点。

生命周期中完成：构造 Kubernetes 客户端与认证器、启动 CertificateRequest watch、
确定根证书、挂载签发服务，并在选主成功后启动根证书分发控制器。
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from loguru import logger

from src.mesh_csr.auth.authenticator import KubeJWTAuthenticator
from src.mesh_csr.certmanager.client import CertificateRequestStore, CertificateRequestWatcher
from src.mesh_csr.config import config
from src.mesh_csr.controller.leader import LeaderElector
from src.mesh_csr.controller.manager import ControllerGroup, build_ca_root_controllers
from src.mesh_csr.kube import load_kube_clients
from src.mesh_csr.server.router import router as ca_router
from src.mesh_csr.server.services import IssuanceService, IssuanceSettings
from src.mesh_csr.tls.root_ca import RootCAProvider, bootstrap_root_ca


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.ready = False
    clients = load_kube_clients(config.kubeconfig, config.kube_context)
    authenticator = KubeJWTAuthenticator(clients.authentication, config.trust_domain, config.token_audiences)

    store = CertificateRequestStore(clients.custom, config.certificate_namespace)
    watcher = CertificateRequestWatcher(store)
    watcher.start()
    service = IssuanceService(authenticator, store, IssuanceSettings.from_config(config), watcher=watcher)

    controllers: Optional[ControllerGroup] = None
    elector: Optional[LeaderElector] = None
    try:
        if config.root_ca_cert_file:
            root_ca = RootCAProvider.from_file(config.root_ca_cert_file)
        else:
            root_ca = RootCAProvider(
                await bootstrap_root_ca(service, config.certificate_namespace, config.max_client_certificate_duration)
            )

        controllers = ControllerGroup(
            build_ca_root_controllers(
                clients.core,
                root_ca.get,
                config.root_ca_configmap_name,
                workers=config.controller_workers,
            )
        )

        if config.leader_election:
            group = controllers

            async def on_started_leading() -> None:
                group.start()

            elector = LeaderElector(
                config.leader_election_namespace,
                config.leader_election_id,
                on_started_leading,
                group.stop,
            )
            elector.start()
        else:
            controllers.start()

        app.state.issuance_service = service
        app.state.root_ca = root_ca
        app.state.ready = True
        logger.info("证书签发服务已就绪")
        yield
    finally:
        app.state.ready = False
        logger.info("应用关闭，正在停止控制器与 watch...")
        if elector is not None:
            elector.stop()
        if controllers is not None:
            await controllers.stop()
        watcher.stop()
        clients.api_client.close()


app = FastAPI(title="cert-manager Istio CSR Service", lifespan=lifespan)

# 包含证书签发服务的路由
app.include_router(ca_router, prefix="/v1")

logger.info(f"config: {config.model_dump_json(indent=4)}")


@app.get(config.readiness_probe_path)
async def readyz() -> dict:
    if not getattr(app.state, "ready", False):
        raise HTTPException(status_code=503, detail="not ready")
    return {"ok": True}
