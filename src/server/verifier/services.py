"""
Alexa 请求校验服务的业务逻辑层。
此模块按顺序串联证书获取、时间戳校验与签名校验，任一阶段失败即终止，并只保留第一个失败原因。
"""

from typing import Callable, List, Optional, Sequence

from cryptography import x509
from loguru import logger

from src.server.config import config
from . import core
from .cert_cache import CertCache
from .schemas import VerificationContext, VerificationFailure


Fetcher = Callable[[str], List[bytes]]


class RequestVerifier:
    """
    请求校验流程的编排者，持有证书链缓存与受信根证书集合。
    在进程启动时创建一次，所有请求共享同一个实例。
    """

    def __init__(
        self,
        trust_anchors: Sequence[x509.Certificate],
        cache: Optional[CertCache] = None,
        fetcher: Fetcher = core.fetch_cert_chain,
        hostname: Optional[str] = None,
    ) -> None:
        self.trust_anchors = tuple(trust_anchors)
        self.cache = cache if cache is not None else CertCache()
        self.fetcher = fetcher
        self.hostname = hostname or config.alexa_echo_dns

    def verify_request(self, ctx: VerificationContext) -> VerificationContext:
        """
        依次执行全部校验阶段。
        :param ctx: 请求上下文。
        :return: 同一个上下文；ctx.error 为空表示通过。
        """
        for stage in (self.populate_cert, self.verify_time, self.verify_signature):
            if ctx.is_rejected:
                break
            stage(ctx)
        return ctx

    def populate_cert(self, ctx: VerificationContext) -> VerificationContext:
        """
        从缓存或证书链 URL 获取通过校验的证书链，写入 ctx.signing_cert。
        """
        cert_url = ctx.cert_url
        if not cert_url:
            ctx.fail(VerificationFailure.MISSING_CERTIFICATE_HEADER)
            return ctx

        cached = self.cache.get(cert_url)
        if cached is not None:
            logger.debug(f"证书链缓存命中，跳过校验: {cert_url}")
            ctx.signing_cert = cached
            return ctx

        if not core.is_correct_alexa_url(cert_url):
            logger.debug(f"证书链 URL 不符合要求: {cert_url}")
            ctx.fail(VerificationFailure.INVALID_CERTIFICATE_SOURCE_URL)
            return ctx

        try:
            chain = self.fetcher(cert_url)
        except core.VerifierError as e:
            logger.debug(f"证书链拉取失败: {cert_url}, {e}")
            ctx.fail(e.failure)
            return ctx
        except Exception as e:
            logger.debug(f"证书链拉取时发生未预期的错误: {cert_url}, {e!r}")
            ctx.fail(VerificationFailure.FETCH_OR_DECODE_FAILURE)
            return ctx

        try:
            chain = core.validate_chain(chain, self.trust_anchors)
        except core.CertificateValidationError as e:
            logger.debug(f"已拉取证书链但证书链校验失败: {cert_url}, {e}")
            ctx.fail(e.failure)
            return ctx

        try:
            chain = core.validate_domain(chain, self.hostname)
        except core.CertificateValidationError as e:
            logger.debug(f"已拉取证书链但主机名校验失败: {cert_url}, {e}")
            ctx.fail(e.failure)
            return ctx

        logger.debug(f"证书链校验通过，写入缓存: {cert_url}")
        self.cache.put(cert_url, chain)
        ctx.signing_cert = chain
        return ctx

    def verify_time(self, ctx: VerificationContext) -> VerificationContext:
        if not core.is_datetime_valid(ctx.timestamp):
            logger.debug(f"请求时间戳无效或已过期: {ctx.timestamp!r}")
            ctx.fail(VerificationFailure.STALE_TIMESTAMP)
        return ctx

    def verify_signature(self, ctx: VerificationContext) -> VerificationContext:
        """
        使用证书链中的叶子证书校验原始请求体的签名。
        """
        if not ctx.signing_cert:
            ctx.fail(VerificationFailure.MISSING_CERTIFICATE)
            return ctx
        if not ctx.signature:
            ctx.fail(VerificationFailure.MISSING_SIGNATURE_HEADER)
            return ctx

        try:
            core.verify_signature(ctx.raw_body, ctx.signature, core.leaf_certificate(ctx.signing_cert))
        except core.SignatureVerificationError as e:
            logger.debug(f"请求签名校验失败: {e}")
            ctx.fail(e.failure)
        return ctx

    def purge_cache(self) -> None:
        """管理操作：清空证书链缓存，不在请求路径上调用。"""
        self.cache.purge()
