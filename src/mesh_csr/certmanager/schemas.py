"""
cert-manager CertificateRequest 资源中本服务关心的字段。
"""

from __future__ import annotations

import base64
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

GROUP = "cert-manager.io"
VERSION = "v1"
PLURAL = "certificaterequests"
KIND = "CertificateRequest"

IDENTITIES_ANNOTATION_KEY = "istio.cert-manager.io/identities"

CONDITION_READY = "Ready"
CONDITION_DENIED = "Denied"
CONDITION_INVALID_REQUEST = "InvalidRequest"
REASON_FAILED = "Failed"
REASON_DENIED = "Denied"


class IssuerRef(BaseModel):
    name: str
    kind: str
    group: str


class Condition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None


class CertificateRequestStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conditions: List[Condition] = Field(default_factory=list)
    certificate: Optional[str] = None  # Base64 编码的 PEM 证书链
    ca: Optional[str] = None  # Base64 编码的 PEM CA 证书

    def condition(self, condition_type: str) -> Optional[Condition]:
        for c in self.conditions:
            if c.type == condition_type:
                return c
        return None

    @property
    def ready(self) -> bool:
        c = self.condition(CONDITION_READY)
        return c is not None and c.status == "True"

    @property
    def failure(self) -> Optional[str]:
        """返回终止性失败的描述，未失败时返回 None。"""
        for condition_type in (CONDITION_DENIED, CONDITION_INVALID_REQUEST):
            c = self.condition(condition_type)
            if c is not None and c.status == "True":
                return f"{condition_type}: {c.message or c.reason or ''}".strip()
        ready = self.condition(CONDITION_READY)
        if ready is not None and ready.status == "False" and ready.reason in (REASON_FAILED, REASON_DENIED):
            return f"{ready.reason}: {ready.message or ''}".strip()
        return None

    def certificate_pem(self) -> str:
        return base64.b64decode(self.certificate or "").decode("utf-8")

    def ca_pem(self) -> str:
        return base64.b64decode(self.ca or "").decode("utf-8")


class CertificateRequest(BaseModel):
    """只读视图：从 API 返回的字典中提取名称与状态。"""

    model_config = ConfigDict(extra="ignore")

    name: str
    namespace: Optional[str] = None
    status: CertificateRequestStatus = Field(default_factory=CertificateRequestStatus)

    @classmethod
    def from_object(cls, obj: dict) -> "CertificateRequest":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            status=CertificateRequestStatus.model_validate(obj.get("status") or {}),
        )


def build_certificate_request(
    *,
    csr_pem: str,
    namespace: str,
    issuer_ref: IssuerRef,
    duration: str,
    identities: str,
) -> dict:
    """
    构造 CertificateRequest 资源清单。
    :param csr_pem: PEM 格式的 CSR。
    :param duration: Go 格式的有效期，例如 3600s。
    :param identities: 调用方身份字符串，写入注解便于审计。
    """
    return {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": KIND,
        "metadata": {
            "generateName": "istio-csr-",
            "namespace": namespace,
            "annotations": {IDENTITIES_ANNOTATION_KEY: identities},
        },
        "spec": {
            "request": base64.b64encode(csr_pem.encode("utf-8")).decode("utf-8"),
            "duration": duration,
            "isCA": False,
            "usages": ["client auth", "server auth"],
            "issuerRef": issuer_ref.model_dump(),
        },
    }
