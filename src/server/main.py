"""
FastAPI 应用入口点。
"""

from loguru import logger
from contextlib import asynccontextmanager

from fastapi import FastAPI
from src.server.verifier.cert_cache import CertCache
from src.server.verifier.core import load_trust_anchors
from src.server.verifier.router import router as verifier_router
from src.server.verifier.services import RequestVerifier

from src.server.config import config

@asynccontextmanager
async def lifespan(app: FastAPI):
    # 根证书与证书链缓存在进程启动时创建一次，所有请求共享
    cache = CertCache()
    app.state.request_verifier = RequestVerifier(
        trust_anchors=load_trust_anchors(),
        cache=cache,
    )
    if config.alexa_verify_disabled:
        logger.warning("Alexa 请求校验已关闭（测试模式），请勿在生产环境使用")
    try:
        yield
    finally:
        logger.info("应用关闭，清空证书链缓存")
        cache.purge()

app = FastAPI(title="Alexa Request Verifier Service", lifespan=lifespan)

app.include_router(verifier_router, prefix="/v1")

logger.info(f"config: {config.model_dump_json(indent=4)}")
