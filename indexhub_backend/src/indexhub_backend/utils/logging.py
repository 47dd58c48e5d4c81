from __future__ import annotations

import logging

_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO):
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # httpx 默认会逐条打印请求日志
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("indexhub")
