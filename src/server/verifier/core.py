"""
Alexa 请求校验的核心逻辑实现。
包括证书链 URL 校验、证书链拉取、乱序证书链校验、主机名绑定校验、时间戳新鲜度校验以及请求签名校验。
"""

import base64
import re
from datetime import datetime, timezone
from typing import List, Sequence, Tuple
from urllib.parse import urlsplit

import certifi
import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from loguru import logger

from src.server.config import config
from .schemas import VerificationFailure


CertificateChain = List[bytes]
TrustAnchorSet = Tuple[x509.Certificate, ...]

PEM_CERT_PATTERN = rb"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----"


class VerifierError(ValueError):
    """校验阶段失败的基类，failure 即返回给调用方的原因。"""

    failure: VerificationFailure

    def __init__(self, failure: VerificationFailure, detail: str | None = None):
        super().__init__(detail or failure.value)
        self.failure = failure


class CertificateFetchError(VerifierError):
    pass


class CertificateValidationError(VerifierError):
    pass


class SignatureVerificationError(VerifierError):
    pass


def load_trust_anchors(path: str | None = None) -> TrustAnchorSet:
    """
    加载根证书集合，进程启动时调用一次。
    :param path: PEM 根证书包路径，为空时使用配置项或 certifi 自带的证书包。
    :return: 不可变的根证书元组。
    """
    bundle_path = path or config.trust_store_path or certifi.where()
    with open(bundle_path, "rb") as f:
        text = f.read()

    # 逐张解析，个别无法解析的根证书只跳过，不影响整个根证书集合
    anchors = []
    for block in re.findall(PEM_CERT_PATTERN, text):
        try:
            anchors.append(x509.load_pem_x509_certificate(block))
        except ValueError as e:
            logger.warning(f"跳过无法解析的根证书: {e}")
    logger.info(f"已加载 {len(anchors)} 个根证书: {bundle_path}")
    return tuple(anchors)


def is_correct_alexa_url(url: object) -> bool:
    """
    判断证书链 URL 是否符合接受策略（scheme、主机、端口、路径前缀）。
    任何无法解析或不符合的输入都返回 False。
    """
    if not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        port = parts.port if parts.port is not None else (443 if scheme == "https" else None)
        return (
            scheme == config.cert_url_scheme
            and parts.hostname == config.cert_url_host.lower()
            and port == config.cert_url_port
            and parts.path.startswith(config.cert_url_path_prefix)
        )
    except ValueError:
        return False


def decode_pem_chain(pem_bundle: bytes) -> CertificateChain:
    """
    将 PEM 证书包解码为按原顺序排列的 DER 证书列表。
    :raises CertificateFetchError: PEM 内容无法解析时。
    """
    try:
        certs = x509.load_pem_x509_certificates(pem_bundle)
    except ValueError as e:
        raise CertificateFetchError(VerificationFailure.FETCH_OR_DECODE_FAILURE, f"PEM 解码失败: {e}")
    return [cert.public_bytes(Encoding.DER) for cert in certs]


def fetch_cert_chain(url: str) -> CertificateChain:
    """
    从证书链 URL 拉取 PEM 证书包。
    :param url: 已通过 is_correct_alexa_url 校验的 URL。
    :return: DER 证书列表。
    :raises CertificateFetchError: 网络错误或内容无法解析时。
    """
    try:
        resp = httpx.get(url, timeout=config.cert_fetch_timeout)
        resp.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise CertificateFetchError(VerificationFailure.FETCH_OR_DECODE_FAILURE, f"拉取证书链失败: {e}")
    return decode_pem_chain(resp.content)


def _check_validity_period(cert: x509.Certificate, at_time: datetime) -> None:
    if at_time < cert.not_valid_before_utc:
        raise ValueError(f"证书尚未生效: {cert.subject.rfc4514_string()}")
    if at_time > cert.not_valid_after_utc:
        raise ValueError(f"证书已过期: {cert.subject.rfc4514_string()}")


def _is_directly_issued_by(cert: x509.Certificate, issuer: x509.Certificate, at_time: datetime) -> bool:
    """单跳路径校验：issuer 签发了 cert，issuer 可作为 CA，且 cert 在有效期内。"""
    if cert.issuer != issuer.subject:
        return False
    try:
        try:
            bc = issuer.extensions.get_extension_for_class(x509.BasicConstraints)
            if not bc.value.ca:
                return False
        except x509.ExtensionNotFound:
            pass
        cert.verify_directly_issued_by(issuer)
        _check_validity_period(cert, at_time)
        return True
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False


def validate_chain(chain: Sequence[bytes], trust_anchors: Sequence[x509.Certificate]) -> CertificateChain:
    """
    校验证书链能否追溯到受信根证书，证书链可以是任意顺序。

    受信集合以根证书为初始值，每一轮在待验证列表中查找任意一张能由受信集合中某张证书
    单跳验证的证书，找到后将其移入受信集合（成为新的受信中间证书）并开始下一轮。
    某一轮找不到任何证书即失败；待验证列表清空即通过。

    :param chain: DER 编码的证书列表，按发送方给出的顺序。
    :param trust_anchors: 受信根证书集合。
    :return: 原样返回的证书链（保持原顺序）。
    :raises CertificateValidationError: 证书链为空、证书格式错误、过期或无法追溯到根证书时。
    """
    if not chain:
        raise CertificateValidationError(VerificationFailure.CHAIN_VALIDATION_FAILURE, "证书链为空")

    try:
        untrusted = [x509.load_der_x509_certificate(der) for der in chain]
    except ValueError as e:
        raise CertificateValidationError(VerificationFailure.CHAIN_VALIDATION_FAILURE, f"证书格式错误: {e}")

    # 发送方通常按叶子在前的顺序给出，反向扫描更可能一轮命中
    untrusted.reverse()
    trusted = list(trust_anchors)
    now = datetime.now(timezone.utc)

    while untrusted:
        match = next(
            (
                i
                for i, cert in enumerate(untrusted)
                if any(_is_directly_issued_by(cert, root, now) for root in trusted)
            ),
            None,
        )
        if match is None:
            remaining = ", ".join(c.subject.rfc4514_string() for c in untrusted)
            raise CertificateValidationError(
                VerificationFailure.CHAIN_VALIDATION_FAILURE,
                f"以下证书无法追溯到受信根证书: {remaining}",
            )
        trusted = [untrusted[match]] + trusted
        untrusted = untrusted[:match] + untrusted[match + 1:]

    return list(chain)


def leaf_certificate(chain: Sequence[bytes]) -> bytes:
    """
    返回证书链中的叶子证书。
    第一张证书没有签发链中其他证书时即为叶子；否则取第一张没有签发任何其他证书的证书，
    以兼容整体倒序发送的证书链。
    :raises CertificateValidationError: 证书链为空时。
    """
    if not chain:
        raise CertificateValidationError(VerificationFailure.MISSING_CERTIFICATE, "证书链为空")
    try:
        certs = [x509.load_der_x509_certificate(der) for der in chain]
    except ValueError:
        return chain[0]

    def _issues_other(i: int) -> bool:
        return any(j != i and certs[j].issuer == certs[i].subject for j in range(len(certs)))

    for i in range(len(certs)):
        if not _issues_other(i):
            return chain[i]
    return chain[0]


def _hostname_matches(pattern: str, hostname: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    hostname = hostname.lower().rstrip(".")
    if pattern == hostname:
        return True
    # 仅支持最左侧标签的通配符，且通配符后至少两个标签，如 *.amazon.com
    if pattern.startswith("*.") and "." in pattern[2:]:
        head, _, tail = hostname.partition(".")
        return bool(head) and tail == pattern[2:]
    return False


def validate_domain(chain: Sequence[bytes], hostname: str | None = None) -> CertificateChain:
    """
    校验叶子证书（见 leaf_certificate）是否绑定了期望的主机名。
    优先比较 SAN 中的 DNS 名称，叶子证书没有 SAN DNS 名称时回退到 subject CN。
    :raises CertificateValidationError: 主机名不匹配或证书无法解析时。
    """
    expected = hostname or config.alexa_echo_dns
    if not chain:
        raise CertificateValidationError(VerificationFailure.DOMAIN_MISMATCH, "证书链为空")
    try:
        leaf = x509.load_der_x509_certificate(leaf_certificate(chain))
    except ValueError as e:
        raise CertificateValidationError(VerificationFailure.DOMAIN_MISMATCH, f"叶子证书格式错误: {e}")

    try:
        san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        names = []
    if not names:
        names = [str(attr.value) for attr in leaf.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]

    if any(_hostname_matches(name, expected) for name in names):
        return list(chain)
    raise CertificateValidationError(
        VerificationFailure.DOMAIN_MISMATCH, f"叶子证书未绑定 {expected}，实际为 {names}"
    )


def _parse_timestamp(timestamp: datetime | str | None) -> datetime | None:
    if timestamp is None:
        return None
    if isinstance(timestamp, datetime):
        parsed = timestamp
    else:
        try:
            parsed = datetime.fromisoformat(timestamp)
        except (TypeError, ValueError):
            return None
    # 按 UTC 的 naive 时间处理，不应用时区偏移
    return parsed.replace(tzinfo=None)


def is_datetime_valid(timestamp: datetime | str | None, now: datetime | None = None) -> bool:
    """
    判断请求时间戳是否足够新。
    只限制过旧的请求，未来时间的时间戳不会被拒绝。
    :param timestamp: ISO-8601 字符串或 datetime，为空或无法解析时视为过期。
    :param now: 当前时间（UTC），默认取系统时间。
    """
    parsed = _parse_timestamp(timestamp)
    if parsed is None:
        return False
    current = (now or datetime.now(timezone.utc)).replace(tzinfo=None)
    return int((current - parsed).total_seconds()) <= config.timestamp_tolerance_seconds


is_fresh = is_datetime_valid


def verify_signature(message: bytes, signature_b64: str, leaf_cert: bytes) -> None:
    """
    使用叶子证书的公钥校验请求体签名（SHA-1）。
    :param message: 未经修改的原始请求体。
    :param signature_b64: Base64 编码的签名。
    :param leaf_cert: DER 编码的叶子证书。
    :raises SignatureVerificationError: 签名解码失败、公钥缺失或签名不匹配时。
    """
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        public_key = x509.load_der_x509_certificate(leaf_cert).public_key()
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SignatureVerificationError(VerificationFailure.SIGNATURE_MISMATCH, f"签名或证书解码失败: {e}")

    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA1())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, message, ec.ECDSA(hashes.SHA1()))
        else:
            raise SignatureVerificationError(
                VerificationFailure.SIGNATURE_MISMATCH, f"不支持的公钥类型: {type(public_key).__name__}"
            )
    except (InvalidSignature, UnsupportedAlgorithm) as e:
        raise SignatureVerificationError(VerificationFailure.SIGNATURE_MISMATCH, f"签名校验失败: {e!r}")
