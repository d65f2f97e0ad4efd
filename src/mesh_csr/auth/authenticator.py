"""
调用方认证。

签发服务只依赖 Authenticator 协议：给定请求，返回调用方已证明的身份集合，或抛出 AuthenticationError。
KubeJWTAuthenticator 通过 Kubernetes TokenReview 校验 ServiceAccount Token，
并将 ServiceAccount 映射为 SPIFFE 身份。
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol, Tuple

from fastapi import Request
from kubernetes import client
from kubernetes.client import ApiException
from loguru import logger

from ..server.errors import AuthenticationError
from .schemas import Caller

_SERVICE_ACCOUNT_PREFIX = "system:serviceaccount:"


class Authenticator(Protocol):
    authenticator_type: str

    async def authenticate(self, request: Request) -> Caller:
        ...


def bearer_token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def parse_service_account(username: str) -> Tuple[str, str]:
    """
    解析 TokenReview 返回的用户名。
    :param username: 形如 system:serviceaccount:<namespace>:<name>
    :return: (namespace, name)
    :raises ValueError: 不是 ServiceAccount 用户名时。
    """
    if not username.startswith(_SERVICE_ACCOUNT_PREFIX):
        raise ValueError(f"不是 ServiceAccount 用户: {username}")
    parts = username[len(_SERVICE_ACCOUNT_PREFIX):].split(":")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"无效的 ServiceAccount 用户名: {username}")
    return parts[0], parts[1]


def spiffe_identity(trust_domain: str, namespace: str, service_account: str) -> str:
    return f"spiffe://{trust_domain}/ns/{namespace}/sa/{service_account}"


class KubeJWTAuthenticator:
    """基于 Kubernetes TokenReview 的 JWT 认证器。"""

    authenticator_type = "KubeJWTAuthenticator"

    def __init__(
        self,
        api: client.AuthenticationV1Api,
        trust_domain: str,
        audiences: Optional[List[str]] = None,
    ) -> None:
        self._api = api
        self._trust_domain = trust_domain
        self._audiences = list(audiences or [])

    async def authenticate(self, request: Request) -> Caller:
        token = bearer_token_from_request(request)
        if token is None:
            raise AuthenticationError("请求中缺少 Bearer Token")

        review = client.V1TokenReview(
            spec=client.V1TokenReviewSpec(token=token, audiences=self._audiences or None)
        )
        try:
            result = await asyncio.to_thread(self._api.create_token_review, review)
        except ApiException as e:
            logger.warning(f"TokenReview 调用失败: status={e.status}, reason={e.reason}")
            raise AuthenticationError("TokenReview 调用失败") from e

        status = result.status
        if status is None or not status.authenticated:
            reason = status.error if status is not None else "无状态"
            raise AuthenticationError(f"Token 未通过校验: {reason}")

        # 返回的 audiences 必须与请求的至少有一个交集
        if self._audiences and status.audiences is not None:
            if not set(self._audiences) & set(status.audiences):
                raise AuthenticationError("Token 的 audience 不匹配")

        username = status.user.username if status.user is not None else ""
        try:
            namespace, service_account = parse_service_account(username or "")
        except ValueError as e:
            raise AuthenticationError(str(e)) from e

        return Caller(
            identities=[spiffe_identity(self._trust_domain, namespace, service_account)],
            authenticator_type=self.authenticator_type,
        )
