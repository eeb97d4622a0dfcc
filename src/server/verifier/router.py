"""
Alexa 请求校验服务的 FastAPI 路由定义。
"""

import json

from fastapi import APIRouter, Depends

from .dependencies import verify_alexa_request
from .schemas import VerificationContext, VerifyRequestResponse

router = APIRouter(prefix="/alexa", tags=["Alexa Request Verifier"])


def _request_type(ctx: VerificationContext | None) -> str | None:
    if ctx is None:
        return None
    try:
        body = json.loads(ctx.raw_body)
        return body["request"]["type"]
    except (ValueError, KeyError, TypeError):
        return None


@router.post("/verify", response_model=VerifyRequestResponse)
async def verify(ctx: VerificationContext | None = Depends(verify_alexa_request)) -> VerifyRequestResponse:
    """
    Alexa 技能请求入口：请求通过来源校验后返回校验结果与请求类型。
    """
    return VerifyRequestResponse(verified=ctx is not None, request_type=_request_type(ctx))
