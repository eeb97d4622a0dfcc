"""
FastAPI 依赖：在路由处理前校验 Alexa 请求。
必须在解析 JSON 之前读取原始请求体，重新序列化后的请求体会导致签名不匹配。
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from src.server.config import config
from .schemas import SIG_CHAIN_HEADER, SIG_HEADER, VerificationContext
from .services import RequestVerifier


def _extract_timestamp(raw_body: bytes) -> Any:
    try:
        body = json.loads(raw_body)
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    request = body.get("request")
    if not isinstance(request, dict):
        return None
    return request.get("timestamp")


def build_context(request: Request, raw_body: bytes) -> VerificationContext:
    return VerificationContext(
        cert_url=request.headers.get(SIG_CHAIN_HEADER),
        signature=request.headers.get(SIG_HEADER),
        timestamp=_extract_timestamp(raw_body),
        raw_body=raw_body,
    )


def get_request_verifier(request: Request) -> RequestVerifier:
    verifier = getattr(request.app.state, "request_verifier", None)
    if verifier is None:
        raise HTTPException(status_code=500, detail="请求校验服务未初始化")
    return verifier


async def verify_alexa_request(request: Request) -> VerificationContext | None:
    """
    校验请求来源，失败时返回 401 并附带失败原因。
    测试模式（alexa_verify_disabled）下直接放行，返回 None。
    """
    if config.alexa_verify_disabled:
        return None

    verifier = get_request_verifier(request)
    raw_body = await request.body()
    ctx = build_context(request, raw_body)
    # 拉取证书与密码学运算会阻塞，放到线程池中执行
    ctx = await run_in_threadpool(verifier.verify_request, ctx)
    if ctx.is_rejected:
        logger.warning(f"Alexa 请求校验失败: {ctx.error}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=ctx.error)
    return ctx
