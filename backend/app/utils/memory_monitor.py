"""Memory monitoring utilities for OOM prevention between import chunks."""

import gc
import logging

import psutil

from app.core.config import get_settings

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def get_memory_usage() -> int:
    """Current resident set size of this process in bytes."""
    try:
        return psutil.Process().memory_info().rss
    except psutil.Error as e:
        logger.warning(f"Could not get memory usage: {e}")
        return 0


def get_memory_limit() -> int:
    return get_settings().memory_limit_mb * MB


def get_memory_baseline() -> int:
    return get_settings().memory_baseline_mb * MB


def check_memory_exceeded() -> tuple[bool, int, int]:
    """Check if memory usage has exceeded the hard limit.

    Returns:
        (is_exceeded, current_usage_bytes, limit_bytes)
    """
    current = get_memory_usage()
    limit = get_memory_limit()
    is_exceeded = current >= limit
    if is_exceeded:
        logger.error(
            f"Memory limit exceeded: {format_bytes(current)} >= {format_bytes(limit)}"
        )
    elif current > get_memory_baseline():
        logger.warning(
            f"Memory pressure detected: {format_bytes(current)} / {format_bytes(limit)}"
        )
    return is_exceeded, current, limit


def force_gc() -> int:
    """Force a full garbage collection; returns the number of objects freed."""
    collected = gc.collect()
    logger.debug(f"Garbage collection freed {collected} objects")
    return collected


def format_bytes(bytes_val: float) -> str:
    """Format bytes to human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}TB"


def log_memory_status(context: str = "") -> None:
    """Log current memory status for debugging."""
    current = get_memory_usage()
    limit = get_memory_limit()
    usage_percent = (current / limit * 100) if limit > 0 else 0
    context_str = f" [{context}]" if context else ""
    logger.info(
        f"Memory status{context_str}: {format_bytes(current)} / "
        f"{format_bytes(limit)} ({usage_percent:.1f}%)"
    )
