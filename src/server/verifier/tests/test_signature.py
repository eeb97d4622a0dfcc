"""
测试请求签名校验。
"""

import base64

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from src.server.verifier import core
from src.server.verifier.schemas import VerificationFailure

from conftest import der, make_cert


MESSAGE = b'{"version":"1.0","request":{"type":"LaunchRequest","timestamp":"2024-05-01T12:00:00Z"}}'


def test_verify_signature_valid(pki):
    core.verify_signature(MESSAGE, pki.sign(MESSAGE), der(pki.leaf))


def test_verify_signature_flipped_message_byte(pki):
    signature = pki.sign(MESSAGE)
    tampered = bytearray(MESSAGE)
    tampered[10] ^= 0x01
    with pytest.raises(core.SignatureVerificationError) as exc_info:
        core.verify_signature(bytes(tampered), signature, der(pki.leaf))
    assert exc_info.value.failure is VerificationFailure.SIGNATURE_MISMATCH


def test_verify_signature_flipped_signature_byte(pki):
    raw = bytearray(base64.b64decode(pki.sign(MESSAGE)))
    raw[0] ^= 0xFF
    with pytest.raises(core.SignatureVerificationError):
        core.verify_signature(MESSAGE, base64.b64encode(bytes(raw)).decode(), der(pki.leaf))


def test_verify_signature_reserialized_body_does_not_match(pki):
    """重新序列化后的请求体（空白不同）不能通过签名校验。"""
    signature = pki.sign(MESSAGE)
    with pytest.raises(core.SignatureVerificationError):
        core.verify_signature(MESSAGE.replace(b":", b": "), signature, der(pki.leaf))


def test_verify_signature_wrong_certificate(pki):
    signature = pki.sign(MESSAGE)
    with pytest.raises(core.SignatureVerificationError):
        core.verify_signature(MESSAGE, signature, der(pki.intermediate))


@pytest.mark.parametrize("signature", ["not base64!!", "", "AAAA"])
def test_verify_signature_bad_signature_value(pki, signature):
    with pytest.raises(core.SignatureVerificationError):
        core.verify_signature(MESSAGE, signature, der(pki.leaf))


def test_verify_signature_malformed_certificate(pki):
    with pytest.raises(core.SignatureVerificationError) as exc_info:
        core.verify_signature(MESSAGE, pki.sign(MESSAGE), b"not a certificate")
    assert str(exc_info.value.failure.value) == "signature did not match"


def test_verify_signature_ec_leaf(pki):
    ec_key = ec.generate_private_key(ec.SECP256R1())
    leaf = make_cert("ec-leaf", ec_key.public_key(), pki.intermediate, pki.intermediate_key)
    signature = base64.b64encode(ec_key.sign(MESSAGE, ec.ECDSA(hashes.SHA1()))).decode()
    core.verify_signature(MESSAGE, signature, der(leaf))
