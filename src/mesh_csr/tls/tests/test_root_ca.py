"""
根证书来源的测试。
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.mesh_csr.server.schemas import IssuedCertificate
from src.mesh_csr.tls.root_ca import (
    BOOTSTRAP_IDENTITY,
    RootCAProvider,
    bootstrap_root_ca,
    generate_bootstrap_csr,
)


def _self_signed(common_name="test-root") -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def test_provider_from_file(tmp_path):
    pem = _self_signed()
    path = tmp_path / "ca.pem"
    path.write_bytes(pem)
    assert RootCAProvider.from_file(str(path)).get() == pem


def test_provider_from_missing_file(tmp_path):
    with pytest.raises(RuntimeError):
        RootCAProvider.from_file(str(tmp_path / "missing.pem"))


def test_provider_from_invalid_file(tmp_path):
    path = tmp_path / "ca.pem"
    path.write_text("not a certificate", encoding="utf-8")
    with pytest.raises(RuntimeError):
        RootCAProvider.from_file(str(path))


def test_provider_set_rejects_invalid_pem_and_keeps_old_value():
    pem = _self_signed()
    provider = RootCAProvider(pem)
    with pytest.raises(ValueError):
        provider.set(b"garbage")
    assert provider.get() == pem

    provider.set(_self_signed("rotated"))
    assert provider.get() != pem


def test_empty_provider():
    assert RootCAProvider().get() == b""


def test_generate_bootstrap_csr():
    csr = x509.load_pem_x509_csr(generate_bootstrap_csr("cert-manager-istio-csr.istio-system.svc").encode())
    assert csr.is_signature_valid
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["cert-manager-istio-csr.istio-system.svc"]


def test_bootstrap_root_ca_returns_issuer_ca():
    ca = _self_signed().decode()
    service = MagicMock()
    service.sign = AsyncMock(return_value=IssuedCertificate(certificate="leaf", ca=ca))

    pem = asyncio.run(bootstrap_root_ca(service, "istio-system", timedelta(hours=1)))

    assert pem == ca.encode()
    csr_pem, identities, duration = service.sign.await_args.args
    assert identities == BOOTSTRAP_IDENTITY
    assert duration == timedelta(hours=1)
    assert "BEGIN CERTIFICATE REQUEST" in csr_pem


def test_bootstrap_root_ca_without_ca_raises():
    service = MagicMock()
    service.sign = AsyncMock(return_value=IssuedCertificate(certificate="leaf", ca=""))
    with pytest.raises(RuntimeError):
        asyncio.run(bootstrap_root_ca(service, "istio-system", timedelta(hours=1)))


def test_bootstrap_root_ca_sign_failure_raises():
    service = MagicMock()
    service.sign = AsyncMock(side_effect=Exception("issuer not ready"))
    with pytest.raises(RuntimeError, match="issuer not ready"):
        asyncio.run(bootstrap_root_ca(service, "istio-system", timedelta(hours=1)))
