"""
Alexa 请求校验服务的数据模型定义。
"""

from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel


SIG_CHAIN_HEADER = "signaturecertchainurl"
SIG_HEADER = "signature"


class VerificationFailure(str, Enum):
    """
    校验失败原因，取值即返回给调用方的文本。
    """
    MISSING_CERTIFICATE_HEADER = f"no request parameter named {SIG_CHAIN_HEADER}"
    INVALID_CERTIFICATE_SOURCE_URL = "invalid sig chain url"
    FETCH_OR_DECODE_FAILURE = "failed to fetch certificate chain"
    CHAIN_VALIDATION_FAILURE = "no valid root found"
    DOMAIN_MISMATCH = "invalid DNS"
    STALE_TIMESTAMP = "invalid timestamp"
    MISSING_CERTIFICATE = "invalid certificate"
    MISSING_SIGNATURE_HEADER = "no signature"
    SIGNATURE_MISMATCH = "signature did not match"


class VerificationContext(BaseModel):
    """
    单次请求校验的上下文。
    error 一旦被设置就不会再被覆盖，校验结束时 error 为空即视为通过。
    """
    cert_url: Optional[str] = None
    signature: Optional[str] = None
    timestamp: Any = None  # ISO-8601 字符串或 datetime，原样保留
    raw_body: bytes = b""
    signing_cert: Optional[List[bytes]] = None  # DER 编码的证书链
    error: Optional[str] = None

    @property
    def is_rejected(self) -> bool:
        return self.error is not None

    def fail(self, reason: Union[VerificationFailure, str]) -> None:
        """记录失败原因，仅第一次生效。"""
        if self.error is None:
            self.error = reason.value if isinstance(reason, VerificationFailure) else reason


class VerifyRequestResponse(BaseModel):
    """
    校验通过后返回的数据模型。
    """
    verified: bool
    request_type: str | None = None
