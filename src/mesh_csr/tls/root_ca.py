"""
根证书来源。

- 配置了 root_ca_cert_file 时，从文件读取 PEM 根证书；
- 否则为服务自身签发一张引导证书，使用签发者在 status.ca 中返回的 CA。
"""

from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from loguru import logger

from ..server.services import IssuanceService

BOOTSTRAP_IDENTITY = "istio-csr-bootstrap"


class RootCAProvider:
    """线程安全的根证书持有者，get() 可作为 TrustBundleEnforcer 的根证书来源。"""

    def __init__(self, pem: bytes = b"") -> None:
        self._lock = threading.Lock()
        self._pem = b""
        if pem:
            self.set(pem)

    def get(self) -> bytes:
        with self._lock:
            return self._pem

    def set(self, pem: bytes) -> None:
        """
        :raises ValueError: 内容不是有效的 PEM 证书。
        """
        certs = x509.load_pem_x509_certificates(pem)
        with self._lock:
            changed = self._pem != pem
            self._pem = pem
        if changed:
            subjects = ", ".join(c.subject.rfc4514_string() for c in certs)
            logger.info(f"根证书已更新: {subjects}")

    @classmethod
    def from_file(cls, path: str) -> "RootCAProvider":
        """
        :raises RuntimeError: 文件不存在或不是有效的 PEM 证书。
        """
        try:
            pem = Path(path).read_bytes()
            return cls(pem)
        except (OSError, ValueError) as e:
            raise RuntimeError(f"无法加载根证书文件 {path}: {e}") from e


def generate_bootstrap_csr(dns_name: str) -> str:
    """生成引导用的 CSR（私钥只在内存中使用后丢弃）。"""
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(dns_name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode("utf-8")


async def bootstrap_root_ca(service: IssuanceService, namespace: str, duration: timedelta) -> bytes:
    """
    通过签发引导证书获取签发者的 CA。
    :raises RuntimeError: 签发失败或签发者未返回 CA。
    """
    dns_name = f"cert-manager-istio-csr.{namespace}.svc"
    logger.info(f"未配置根证书文件，通过签发 {dns_name} 获取签发者 CA")
    try:
        issued = await service.sign(generate_bootstrap_csr(dns_name), BOOTSTRAP_IDENTITY, duration)
    except Exception as e:
        raise RuntimeError(f"获取签发者 CA 失败: {e}") from e
    if not issued.ca.strip():
        raise RuntimeError("签发者未在 status.ca 中返回 CA 证书，请配置 root_ca_cert_file")
    return issued.ca.encode("utf-8")
