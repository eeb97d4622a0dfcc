"""
测试用的证书链工厂：根证书 -> 中间证书 -> 叶子证书，全部使用 RSA 密钥现场生成。
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from loguru import logger

from src.server.verifier.cert_cache import CertCache
from src.server.verifier.services import RequestVerifier


ECHO_DNS = "echo-api.amazon.com"
CERT_URL = "https://s3.amazonaws.com/echo.api/echo-api-cert-6-ats.pem"


def _gen_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_cert(
    common_name: str,
    public_key,
    issuer_cert: x509.Certificate | None,
    issuer_key,
    ca: bool = False,
    dns_names: List[str] | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> x509.Certificate:
    """签发一张证书；issuer_cert 为空时生成自签证书。"""
    now = datetime.now(timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject if issuer_cert is not None else subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    return builder.sign(private_key=issuer_key, algorithm=hashes.SHA256())


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(Encoding.DER)


@dataclass
class Pki:
    root: x509.Certificate
    root_key: rsa.RSAPrivateKey
    intermediate: x509.Certificate
    intermediate_key: rsa.RSAPrivateKey
    leaf: x509.Certificate
    leaf_key: rsa.RSAPrivateKey

    @property
    def chain(self) -> List[bytes]:
        """发送方的常规顺序：叶子在前。"""
        return [der(self.leaf), der(self.intermediate), der(self.root)]

    def sign(self, message: bytes) -> str:
        signature = self.leaf_key.sign(message, padding.PKCS1v15(), hashes.SHA1())
        return base64.b64encode(signature).decode("utf-8")

    def issue_leaf(self, common_name: str, dns_names: List[str] | None = None, **kwargs) -> x509.Certificate:
        return make_cert(
            common_name,
            self.leaf_key.public_key(),
            self.intermediate,
            self.intermediate_key,
            dns_names=dns_names,
            **kwargs,
        )


@pytest.fixture(scope="session")
def pki() -> Pki:
    root_key = _gen_key()
    root = make_cert("Test Root CA", root_key.public_key(), None, root_key, ca=True)
    intermediate_key = _gen_key()
    intermediate = make_cert(
        "Test Intermediate CA", intermediate_key.public_key(), root, root_key, ca=True
    )
    leaf_key = _gen_key()
    leaf = make_cert(ECHO_DNS, leaf_key.public_key(), intermediate, intermediate_key, dns_names=[ECHO_DNS])
    return Pki(root, root_key, intermediate, intermediate_key, leaf, leaf_key)


@pytest.fixture(scope="session")
def other_pki() -> Pki:
    """与 pki 无关的另一套证书，其根证书不在受信集合中。"""
    root_key = _gen_key()
    root = make_cert("Rogue Root CA", root_key.public_key(), None, root_key, ca=True)
    leaf_key = _gen_key()
    leaf = make_cert(ECHO_DNS, leaf_key.public_key(), root, root_key, dns_names=[ECHO_DNS])
    return Pki(root, root_key, root, root_key, leaf, leaf_key)


class FakeFetcher:
    """记录调用次数的证书链拉取替身。"""

    def __init__(self, chain: List[bytes] | None = None, error: Exception | None = None):
        self.chain = chain or []
        self.error = error
        self.calls: List[str] = []

    def __call__(self, url: str) -> List[bytes]:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return list(self.chain)


@pytest.fixture
def make_verifier(pki):
    def _make(chain: List[bytes] | None = None, error: Exception | None = None):
        fetcher = FakeFetcher(chain if chain is not None else pki.chain, error)
        verifier = RequestVerifier(trust_anchors=(pki.root,), cache=CertCache(), fetcher=fetcher)
        return verifier, fetcher

    return _make


@pytest.fixture
def log_messages():
    """收集 loguru 输出的日志文本。"""
    messages: List[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
