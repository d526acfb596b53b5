import structlog
import logging
import sys
from typing import Callable, Dict, Any, Optional
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "assistant-relay"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context(service_name, os.getenv("ENVIRONMENT", "development")),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_service_context(service_name: str, environment: str) -> Callable[..., Dict[str, Any]]:
    """Processor stamping service identity on every entry; turn_id arrives via merge_contextvars"""

    def processor(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("environment", environment)
        return event_dict

    return processor


def token_prefix(token: Optional[str]) -> Optional[str]:
    """Shorten a continuation token for log output"""
    return token[:8] if token else None


class RelayLogger:
    """Canonical structured events for the relay core"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_engine_invocation(
        self,
        model: Optional[str],
        resume: bool,
        duration_ms: float,
        success: bool,
        continuation_token: Optional[str] = None,
        error: Optional[str] = None,
        **kwargs
    ):
        """Log one engine subprocess round trip"""

        self.logger.info(
            "engine_invocation",
            model=model,
            resume=resume,
            duration_ms=round(duration_ms, 1),
            success=success,
            session=token_prefix(continuation_token),
            error=error,
            **kwargs
        )

    def log_state_mutation(self, field: str, value: Any, persisted: bool = True):
        """Log a session state mutator call"""

        self.logger.info(
            "state_mutation",
            field=field,
            value=value,
            persisted=persisted
        )

    def log_memory_intent(
        self,
        kind: str,
        outcome: str,
        content: Optional[str] = None,
        error: Optional[str] = None
    ):
        """Log the outcome of one memory-write intent"""

        self.logger.info(
            "memory_intent",
            kind=kind,
            outcome=outcome,
            content=content[:80] if content else None,
            error=error
        )


relay_logger = RelayLogger("assistant_relay")
