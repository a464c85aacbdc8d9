"""Structured logging configuration for Quarry."""

import logging
from typing import Any, Dict, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging with audit capabilities."""

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_chunking_event(
    logger: structlog.BoundLogger,
    room_id: str,
    file_id: str,
    file_name: str,
    text_length: int,
    chunks_created: int,
    processing_time_ms: float,
) -> None:
    """Log the one-time chunking phase of a file."""
    logger.info(
        "file_chunked",
        room_id=room_id,
        file_id=file_id,
        file_name=file_name,
        text_length=text_length,
        chunks_created=chunks_created,
        processing_time_ms=processing_time_ms,
        event_type="chunking",
    )


def log_embedding_batch(
    logger: structlog.BoundLogger,
    room_id: str,
    file_id: str,
    batch_size: int,
    processed: int,
    total: int,
    model: str,
    processing_time_ms: float,
) -> None:
    """Log one embedding batch and the resulting progress."""
    logger.info(
        "embedding_batch_stored",
        room_id=room_id,
        file_id=file_id,
        batch_size=batch_size,
        processed=processed,
        total=total,
        model=model,
        processing_time_ms=processing_time_ms,
        event_type="embedding_batch",
    )


def log_file_failed(
    logger: structlog.BoundLogger,
    room_id: str,
    file_id: str,
    error_type: str,
    error_message: str,
) -> None:
    """Log a file moving to the failed state."""
    logger.warning(
        "file_processing_failed",
        room_id=room_id,
        file_id=file_id,
        error_type=error_type,
        error_message=error_message,
        event_type="processing_failure",
    )


def log_retrieval(
    logger: structlog.BoundLogger,
    room_id: str,
    query: str,
    vector_candidates: int,
    keyword_candidates: int,
    results: int,
    execution_time_ms: float,
    parameters: Optional[Dict[str, Any]] = None,
) -> None:
    """Log a hybrid search with the parameters it ran with."""
    logger.info(
        "hybrid_search_completed",
        room_id=room_id,
        query=query,
        vector_candidates=vector_candidates,
        keyword_candidates=keyword_candidates,
        results=results,
        execution_time_ms=execution_time_ms,
        parameters=parameters or {},
        event_type="retrieval",
    )
