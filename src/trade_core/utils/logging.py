"""结构化日志配置模块。

基于 structlog：标准库 logging 负责输出，structlog 负责事件字典与渲染。
每个决策周期通过 contextvars 绑定品种与周期编号，下游模块无需显式传递。
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import Processor

from trade_core.config import LogFormat, Settings, get_settings

# 第三方库默认只输出警告
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def setup_logging(settings: Settings | None = None) -> None:
    """配置结构化日志系统。

    Args:
        settings: 配置实例；为 None 时使用全局配置。
    """
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Processor
    if settings.log_format == LogFormat.JSON:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。"""
    return structlog.get_logger(name)


@contextmanager
def bound_context(**values: Any) -> Iterator[None]:
    """在当前 asyncio 任务内绑定日志上下文，退出时恢复。"""
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def log_provider_call(
    logger: structlog.stdlib.BoundLogger,
    *,
    provider: str,
    success: bool,
    latency_ms: float,
    **kwargs: Any,
) -> None:
    """记录预测服务调用，失败用 warning。"""
    log = logger.info if success else logger.warning
    log("provider_call", provider=provider, success=success, latency_ms=round(latency_ms, 2), **kwargs)


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    instrument: str,
    direction: str,
    quantity: float,
    trade_id: str,
    status: str,
    price: float | None = None,
    **kwargs: Any,
) -> None:
    """记录订单生命周期节点（submitted / filled / failed）。"""
    log = logger.warning if status == "failed" else logger.info
    log(
        "order_execution",
        trade_id=trade_id,
        instrument=instrument,
        direction=direction,
        quantity=quantity,
        price=price,
        status=status,
        **kwargs,
    )


def log_validation(
    logger: structlog.stdlib.BoundLogger,
    *,
    instrument: str,
    passed: bool,
    score: float,
    reasons: list[str],
    **kwargs: Any,
) -> None:
    # rejections are an expected outcome, so never above info
    logger.info(
        "trade_validation",
        instrument=instrument,
        passed=passed,
        score=round(score, 4),
        reasons=reasons,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件（熔断、限额触发等）。"""
    logger.warning("risk_event", event_type=event_type, action=action, **kwargs)
