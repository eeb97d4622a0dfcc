"""
已校验证书链的缓存：证书链 URL -> 通过校验的 DER 证书链。
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger


class CertCache:
    """
    进程内共享的证书链缓存。

    条目只在证书链校验与主机名校验都通过后写入，永不过期，只能通过 purge 整体清空。
    读取不加锁；同一 URL 的并发写入只会写入等价的证书链，后写覆盖先写即可。
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[bytes, ...]] = {}
        self._lock = threading.Lock()

    def get(self, cert_url: str) -> Optional[List[bytes]]:
        chain = self._entries.get(cert_url)
        return list(chain) if chain is not None else None

    def put(self, cert_url: str, cert_chain: Sequence[bytes]) -> None:
        with self._lock:
            self._entries[cert_url] = tuple(cert_chain)

    def purge(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("证书链缓存已清空")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cert_url: object) -> bool:
        return cert_url in self._entries
