"""
证书签发服务的业务逻辑层。

authorize_request 负责认证与授权：CSR 中声明的身份必须与认证器证明的身份完全一致；
IssuanceService 负责把通过授权的 CSR 交给 cert-manager 签发，等待结果并清理 CertificateRequest。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from fastapi import Request
from loguru import logger

from ..auth.authenticator import Authenticator
from ..certmanager.client import (
    CertificateRequestStore,
    CertificateRequestWatcher,
    wait_for_certificate_request,
)
from ..certmanager.schemas import IssuerRef, build_certificate_request
from ..config import Config
from . import core
from .errors import AuthenticationError, AuthorizationError, IssuanceError
from .schemas import IssuedCertificate


async def authorize_request(authenticator: Authenticator, request: Request, csr_pem: str) -> Tuple[str, bool]:
    """
    认证调用方并校验 CSR。
    :param authenticator: 认证器。
    :param request: 当前请求，认证器从中读取凭据。
    :param csr_pem: PEM 格式 CSR。
    :return: (逗号分隔的身份字符串, 是否通过)。认证失败或身份为空时身份字符串为空，
             之后的任何失败都会带上身份字符串以便审计。
    """
    try:
        caller = await authenticator.authenticate(request)
    except Exception as e:
        logger.warning(f"认证失败 ({authenticator.authenticator_type}): {e}")
        return "", False

    if not caller.identities:
        logger.warning(f"认证器 {caller.authenticator_type} 未返回任何身份")
        return "", False

    identities = ",".join(caller.identities)

    try:
        csr = core.load_csr(csr_pem)
    except ValueError as e:
        logger.warning(f"拒绝请求 identities={identities}: {e}")
        return identities, False

    extra = core.csr_extra_identity_fields(csr)
    if extra:
        logger.warning(f"拒绝请求 identities={identities}: CSR 包含不允许的字段 {extra}")
        return identities, False

    claimed = core.csr_uri_identities(csr)
    if not core.identities_match(claimed, caller.identities):
        logger.warning(f"拒绝请求 identities={identities}: CSR 声明的身份不一致 {claimed}")
        return identities, False

    return identities, True


@dataclass
class IssuanceSettings:
    issuer_ref: IssuerRef
    max_duration: timedelta
    timeout: timedelta
    poll_interval: timedelta
    preserve_requests: bool = False
    delete_attempts: int = 3
    delete_retry_seconds: float = 0.5

    @classmethod
    def from_config(cls, cfg: Config) -> "IssuanceSettings":
        return cls(
            issuer_ref=IssuerRef(name=cfg.issuer_name, kind=cfg.issuer_kind, group=cfg.issuer_group),
            max_duration=cfg.max_client_certificate_duration,
            timeout=cfg.issuance_timeout,
            poll_interval=cfg.issuance_poll_interval,
            preserve_requests=cfg.preserve_certificate_requests,
        )


class IssuanceService:
    """把 CSR 委托给 cert-manager 签发。各次调用之间没有共享的可变状态。"""

    def __init__(
        self,
        authenticator: Authenticator,
        store: CertificateRequestStore,
        settings: IssuanceSettings,
        watcher: Optional[CertificateRequestWatcher] = None,
    ) -> None:
        self._authenticator = authenticator
        self._store = store
        self._settings = settings
        self._watcher = watcher

    async def issue(self, request: Request, csr_pem: str, validity_seconds: int) -> IssuedCertificate:
        """
        处理一次签发请求。
        :raises AuthenticationError: 认证失败或没有身份。
        :raises AuthorizationError: CSR 未通过授权校验。
        :raises IssuanceError: cert-manager 签发失败或超时。
        """
        identities, ok = await authorize_request(self._authenticator, request, csr_pem)
        if not ok:
            if not identities:
                raise AuthenticationError("unauthenticated")
            raise AuthorizationError(f"permission denied for {identities}")

        duration = core.clamp_duration(validity_seconds, self._settings.max_duration)
        if validity_seconds > 0 and duration.total_seconds() < validity_seconds:
            logger.info(f"请求的有效期 {validity_seconds}s 超过上限，截断为 {duration}")
        return await self.sign(csr_pem, identities, duration)

    async def sign(self, csr_pem: str, identities: str, duration: timedelta) -> IssuedCertificate:
        """
        创建 CertificateRequest 并等待签发结果。不做任何授权检查。
        """
        body = build_certificate_request(
            csr_pem=csr_pem,
            namespace=self._store.namespace,
            issuer_ref=self._settings.issuer_ref,
            duration=core.format_go_duration(duration),
            identities=identities,
        )
        created = await self._store.create(body)
        name = created.name
        logger.info(f"已创建 CertificateRequest {self._store.namespace}/{name} identities={identities}")

        try:
            ready = await wait_for_certificate_request(
                self._store,
                name,
                timeout=self._settings.timeout,
                poll_interval=self._settings.poll_interval,
                watcher=self._watcher,
            )
            try:
                issued = IssuedCertificate(
                    certificate=ready.status.certificate_pem(),
                    ca=ready.status.ca_pem(),
                )
                issued.cert_chain()
            except ValueError as e:
                raise IssuanceError(f"CertificateRequest {name} 返回的证书无效: {e}")
            logger.info(f"证书已签发 {self._store.namespace}/{name} identities={identities}")
            return issued
        except IssuanceError as e:
            logger.error(f"签发失败 identities={identities}: {e}")
            raise
        finally:
            if self._settings.preserve_requests:
                logger.debug(f"保留 CertificateRequest {self._store.namespace}/{name}")
            else:
                await asyncio.shield(self._delete_certificate_request(name))

    async def _delete_certificate_request(self, name: str) -> None:
        attempts = max(1, self._settings.delete_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._store.delete(name)
                logger.debug(f"已删除 CertificateRequest {self._store.namespace}/{name}")
                return
            except Exception as e:
                logger.warning(f"删除 CertificateRequest {name} 失败（第 {attempt}/{attempts} 次）: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self._settings.delete_retry_seconds * attempt)
        logger.error(f"CertificateRequest {self._store.namespace}/{name} 删除失败，资源将残留")
