"""
证书签发服务的数据模型定义。
"""

from typing import List

from pydantic import BaseModel, Field

from .core import split_pem_chain


class IstioCertificateRequest(BaseModel):
    """
    Sidecar 请求签发工作负载证书时的数据模型。
    """
    csr: str  # PEM 格式的证书签名请求 (CSR)
    validity_duration: int = Field(default=0, description="请求的有效期（秒），非正数表示使用最大值")


class IstioCertificateResponse(BaseModel):
    """
    服务端返回的证书链：叶子证书与中间证书在前，CA 证书在最后。
    """
    cert_chain: List[str]


class IssuedCertificate(BaseModel):
    """
    从 CertificateRequest 状态中提取的签发结果。
    """
    certificate: str  # PEM 格式证书链
    ca: str  # PEM 格式 CA 证书

    def cert_chain(self) -> List[str]:
        chain = split_pem_chain(self.certificate)
        if self.ca.strip():
            chain.append(self.ca if self.ca.endswith("\n") else self.ca + "\n")
        return chain
