"""
IssuanceService 的测试：使用内存中的 CertificateRequest 存储，不访问集群。
"""

import asyncio
import base64
from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from kubernetes.client import ApiException

from src.mesh_csr.auth.schemas import Caller
from src.mesh_csr.certmanager.client import CertificateRequestWatcher
from src.mesh_csr.certmanager.schemas import IDENTITIES_ANNOTATION_KEY, CertificateRequest, IssuerRef
from src.mesh_csr.server.errors import AuthenticationError, AuthorizationError, IssuanceError
from src.mesh_csr.server.services import IssuanceService, IssuanceSettings

LEAF_PEM = "-----BEGIN CERTIFICATE-----\nTEVBRg==\n-----END CERTIFICATE-----\n"
CA_PEM = "-----BEGIN CERTIFICATE-----\nQ0E=\n-----END CERTIFICATE-----\n"


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("utf-8")


READY_STATUS = {
    "conditions": [{"type": "Ready", "status": "True", "reason": "Issued"}],
    "certificate": _b64(LEAF_PEM),
    "ca": _b64(CA_PEM),
}
PENDING_STATUS = {"conditions": [{"type": "Ready", "status": "False", "reason": "Pending"}]}
FAILED_STATUS = {"conditions": [{"type": "Ready", "status": "False", "reason": "Failed", "message": "boom"}]}


class FakeStore:
    namespace = "istio-system"

    def __init__(self, status, delete_error=None):
        self.status = status
        self.delete_error = delete_error
        self.created = []
        self.deleted = []
        self.delete_calls = 0

    async def create(self, body):
        self.created.append(body)
        return CertificateRequest(name=f"istio-csr-{len(self.created)}", namespace=self.namespace)

    async def get(self, name):
        return CertificateRequest.from_object({"metadata": {"name": name}, "status": self.status})

    async def delete(self, name):
        self.delete_calls += 1
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(name)


class MockAuthenticator:
    authenticator_type = "mockAuthenticator"

    def __init__(self, identities=None, err_msg=""):
        self.identities = identities or []
        self.err_msg = err_msg

    async def authenticate(self, request):
        if self.err_msg:
            raise AuthenticationError(self.err_msg)
        return Caller(identities=self.identities, authenticator_type=self.authenticator_type)


def _gen_csr(identities) -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(
            x509.SubjectAlternativeName([x509.UniformResourceIdentifier(u) for u in identities]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode("utf-8")


IDENTITY = "spiffe://cluster.local/ns/foo/sa/bar"


def _settings(**overrides) -> IssuanceSettings:
    values = dict(
        issuer_ref=IssuerRef(name="istio-ca", kind="Issuer", group="cert-manager.io"),
        max_duration=timedelta(hours=1),
        timeout=timedelta(seconds=2),
        poll_interval=timedelta(milliseconds=20),
        delete_retry_seconds=0,
    )
    values.update(overrides)
    return IssuanceSettings(**values)


def _service(store, identities=(IDENTITY,), watcher=None, **overrides) -> IssuanceService:
    return IssuanceService(MockAuthenticator(identities=list(identities)), store, _settings(**overrides), watcher=watcher)


def test_issue_success_builds_request_and_cleans_up():
    """签发成功：资源内容正确，返回证书与 CA，并删除 CertificateRequest"""
    store = FakeStore(READY_STATUS)
    issued = asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 600))

    assert issued.certificate == LEAF_PEM
    assert issued.ca == CA_PEM
    assert issued.cert_chain() == [LEAF_PEM, CA_PEM]

    body = store.created[0]
    assert body["metadata"]["generateName"] == "istio-csr-"
    assert body["metadata"]["namespace"] == "istio-system"
    assert body["metadata"]["annotations"][IDENTITIES_ANNOTATION_KEY] == IDENTITY
    assert body["spec"]["issuerRef"] == {"name": "istio-ca", "kind": "Issuer", "group": "cert-manager.io"}
    assert body["spec"]["duration"] == "600s"
    assert body["spec"]["usages"] == ["client auth", "server auth"]
    assert body["spec"]["isCA"] is False
    assert base64.b64decode(body["spec"]["request"]).decode("utf-8").startswith("-----BEGIN CERTIFICATE REQUEST-----")
    assert store.deleted == ["istio-csr-1"]


def test_issue_clamps_duration_to_maximum():
    """超过最大有效期的请求被截断，而不是被拒绝"""
    store = FakeStore(READY_STATUS)
    asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 48 * 3600))
    assert store.created[0]["spec"]["duration"] == "3600s"


def test_issue_clamps_huge_duration_without_overflow():
    """超出 timedelta 表示范围的有效期同样被截断"""
    store = FakeStore(READY_STATUS)
    issued = asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 10**15))
    assert issued.certificate == LEAF_PEM
    assert store.created[0]["spec"]["duration"] == "3600s"


def test_issue_negative_duration_uses_maximum():
    store = FakeStore(READY_STATUS)
    asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), -60))
    assert store.created[0]["spec"]["duration"] == "3600s"


def test_issue_malformed_status_raises_issuance_error():
    """status 中的证书不是合法 base64 时按签发失败处理"""
    store = FakeStore({**READY_STATUS, "certificate": "abc"})
    with pytest.raises(IssuanceError, match="证书无效"):
        asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 600))
    assert store.deleted == ["istio-csr-1"]


def test_issue_survives_transient_get_failure():
    """轮询中某次读取失败不会中断等待"""

    class FlakyStore(FakeStore):
        def __init__(self):
            super().__init__(PENDING_STATUS)
            self.gets = 0

        async def get(self, name):
            self.gets += 1
            if self.gets == 2:
                raise ApiException(status=503, reason="Service Unavailable")
            status = READY_STATUS if self.gets >= 3 else PENDING_STATUS
            return CertificateRequest.from_object({"metadata": {"name": name}, "status": status})

    store = FlakyStore()
    issued = asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 600))
    assert issued.certificate == LEAF_PEM
    assert store.gets == 3
    assert store.deleted == ["istio-csr-1"]


def test_issue_unauthenticated_creates_nothing():
    store = FakeStore(READY_STATUS)
    service = IssuanceService(MockAuthenticator(err_msg="bad token"), store, _settings())
    with pytest.raises(AuthenticationError):
        asyncio.run(service.issue(None, _gen_csr([IDENTITY]), 600))
    assert store.created == []


def test_issue_permission_denied_creates_nothing():
    store = FakeStore(READY_STATUS)
    with pytest.raises(AuthorizationError):
        asyncio.run(_service(store).issue(None, _gen_csr(["spiffe://someone/else"]), 600))
    assert store.created == []


def test_issue_failed_request_raises_and_cleans_up():
    store = FakeStore(FAILED_STATUS)
    with pytest.raises(IssuanceError, match="boom"):
        asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 600))
    assert store.deleted == ["istio-csr-1"]


def test_issue_denied_request_raises():
    store = FakeStore({"conditions": [{"type": "Denied", "status": "True", "message": "policy"}]})
    with pytest.raises(IssuanceError, match="Denied"):
        asyncio.run(_service(store).issue(None, _gen_csr([IDENTITY]), 600))


def test_issue_timeout_raises_and_cleans_up():
    store = FakeStore(PENDING_STATUS)
    service = _service(store, timeout=timedelta(milliseconds=200))
    with pytest.raises(IssuanceError, match="超时"):
        asyncio.run(service.issue(None, _gen_csr([IDENTITY]), 600))
    assert store.deleted == ["istio-csr-1"]


def test_issue_preserves_requests_when_configured():
    store = FakeStore(READY_STATUS)
    asyncio.run(_service(store, preserve_requests=True).issue(None, _gen_csr([IDENTITY]), 600))
    assert store.deleted == []
    assert store.delete_calls == 0


def test_issue_delete_failure_does_not_fail_request():
    """删除失败只记录日志，重试有限次数后放弃"""
    store = FakeStore(READY_STATUS, delete_error=RuntimeError("apiserver down"))
    issued = asyncio.run(_service(store, delete_attempts=2).issue(None, _gen_csr([IDENTITY]), 600))
    assert issued.ca == CA_PEM
    assert store.delete_calls == 2


def test_issue_resolves_on_watch_event():
    """资源就绪的 watch 事件会唤醒等待，无需等到下一次轮询"""

    class PendingThenReadyStore(FakeStore):
        async def get(self, name):
            return CertificateRequest.from_object({"metadata": {"name": name}, "status": PENDING_STATUS})

    store = PendingThenReadyStore(PENDING_STATUS)
    watcher = CertificateRequestWatcher(store)
    service = _service(store, watcher=watcher, poll_interval=timedelta(seconds=30), timeout=timedelta(seconds=5))

    async def main():
        task = asyncio.create_task(service.issue(None, _gen_csr([IDENTITY]), 600))
        while not store.created:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        watcher.dispatch({"metadata": {"name": "istio-csr-1"}, "status": READY_STATUS})
        return await task

    issued = asyncio.run(main())
    assert issued.certificate == LEAF_PEM
    assert store.deleted == ["istio-csr-1"]


def test_issue_cancellation_still_cleans_up():
    store = FakeStore(PENDING_STATUS)
    service = _service(store, timeout=timedelta(seconds=30))

    async def main():
        task = asyncio.create_task(service.issue(None, _gen_csr([IDENTITY]), 600))
        while not store.created:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)

    asyncio.run(main())
    assert store.deleted == ["istio-csr-1"]
