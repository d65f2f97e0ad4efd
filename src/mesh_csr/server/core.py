"""
证书签发服务的核心逻辑实现。
包括身份比对、CSR 解析与身份字段检查、有效期截断、证书链拆分等纯函数。
"""

import re
from datetime import timedelta
from typing import Iterable, List

from cryptography import x509
from cryptography.x509.oid import NameOID
from loguru import logger

_PEM_CERT_PATTERN = re.compile(r"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----")


def identities_match(claimed: Iterable[str], proven: Iterable[str]) -> bool:
    """
    比较 CSR 中声明的身份与认证得到的身份是否完全一致。
    两者按集合比较，忽略顺序与重复项；两者都为空时视为一致。
    :param claimed: CSR 中的 URI SAN。
    :param proven: 认证器返回的身份。
    :return: 集合相等返回 True。
    """
    return set(claimed) == set(proven)


def load_csr(csr_pem: str) -> x509.CertificateSigningRequest:
    """
    解析 PEM 格式的 CSR，并校验其自签名。
    :param csr_pem: PEM 格式的 CSR 文本。
    :return: 解析后的 CSR 对象。
    :raises ValueError: 如果 CSR 无效。
    """
    try:
        csr = x509.load_pem_x509_csr(csr_pem.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.debug(f"CSR 解析失败: {e}")
        raise ValueError("无效的 CSR 格式")
    if not csr.is_signature_valid:
        raise ValueError("CSR 签名无效")
    return csr


def _subject_alternative_names(csr: x509.CertificateSigningRequest) -> x509.SubjectAlternativeName | None:
    try:
        return csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return None


def csr_uri_identities(csr: x509.CertificateSigningRequest) -> List[str]:
    """返回 CSR 中所有 URI SAN。"""
    san = _subject_alternative_names(csr)
    if san is None:
        return []
    return san.get_values_for_type(x509.UniformResourceIdentifier)


def csr_extra_identity_fields(csr: x509.CertificateSigningRequest) -> List[str]:
    """
    列出 CSR 中除 URI SAN 以外携带身份信息的字段。
    身份只允许通过 URI SAN 传递，DNS / IP / Email SAN 以及主题 CN 都不允许出现。
    :return: 出现的字段名列表，为空表示没有多余字段。
    """
    fields = []
    san = _subject_alternative_names(csr)
    if san is not None:
        if san.get_values_for_type(x509.DNSName):
            fields.append("dns")
        if san.get_values_for_type(x509.IPAddress):
            fields.append("ip")
        if san.get_values_for_type(x509.RFC822Name):
            fields.append("email")
    if any(attr.value for attr in csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)):
        fields.append("common_name")
    return fields


def clamp_duration(requested_seconds: int, maximum: timedelta) -> timedelta:
    """
    将请求的有效期（秒）截断到允许的最大值。
    超过最大值时静默截断；未指定（非正数）时使用最大值。
    先以整数比较再构造 timedelta，任意大的请求值都不会溢出。
    """
    if requested_seconds <= 0 or requested_seconds >= maximum.total_seconds():
        return maximum
    return timedelta(seconds=requested_seconds)


def format_go_duration(duration: timedelta) -> str:
    """以 Go time.Duration 可解析的格式输出，例如 3600s。"""
    return f"{int(duration.total_seconds())}s"


def split_pem_chain(chain_pem: str) -> List[str]:
    """
    将 PEM 证书链拆分为单个证书块，保持原有顺序。
    :raises ValueError: 文本中没有任何证书块时。
    """
    blocks = _PEM_CERT_PATTERN.findall(chain_pem)
    if not blocks:
        raise ValueError("证书链中没有 PEM 证书")
    return [block + "\n" for block in blocks]
