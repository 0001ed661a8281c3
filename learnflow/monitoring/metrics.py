"""
Core metrics and monitoring decorators for the learning assistant.

This module defines Prometheus metrics and decorators for tracking:
- Query latency by query type
- Analyzer latency and failures
- AI Service Layer latency
- Degraded responses and their reasons
- Gap ingestion outcomes and Progress Store deliveries
"""

import asyncio
import functools
import logging
import time
from typing import Callable, Optional

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

QUERY_LATENCY = Histogram(
    'learnflow_query_duration_seconds',
    'Time from router receipt to response return',
    ['query_type'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, float("inf")]
)

QUERY_COUNT = Counter(
    'learnflow_queries_total',
    'Total number of routed queries',
    ['query_type', 'mode']
)

ERROR_COUNT = Counter(
    'learnflow_errors_total',
    'Total number of errors',
    ['type', 'location']  # type: e.g., 'analyzer', 'ai', 'store'; location: specific component
)

ANALYZER_PROCESSING_TIME = Histogram(
    'learnflow_analyzer_duration_seconds',
    'Time spent in a single analyzer',
    ['analyzer'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, float("inf")]
)

AI_REQUEST_TIME = Histogram(
    'learnflow_ai_request_duration_seconds',
    'Time spent waiting for the AI Service Layer',
    ['model'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, float("inf")]
)

DEGRADED_RESPONSES = Counter(
    'learnflow_degraded_responses_total',
    'Responses returned in degraded mode',
    ['reason']
)

GAPS_INGESTED = Counter(
    'learnflow_gaps_ingested_total',
    'Gap signals processed by the gap pipeline',
    ['outcome']  # created, merged, escalated, rejected
)

PROGRESS_DELIVERIES = Counter(
    'learnflow_progress_deliveries_total',
    'Progress Store deliveries',
    ['outcome']  # delivered, retry_scheduled, dropped
)


def _observe(metric: Histogram, labels: Optional[Callable], args, duration: float, func_name: str) -> None:
    if labels and args:
        # For instance methods, first arg is 'self'
        metric.labels(**labels(args[0])).observe(duration)
    else:
        metric.observe(duration)
    logger.debug(
        f"Function {func_name} execution time: {duration:.2f} seconds",
        extra={'extra_fields': {'duration': duration, 'function': func_name}}
    )


def track_latency(metric: Histogram, labels: Optional[Callable] = None) -> Callable:
    """
    A decorator factory that tracks the execution time of a function using a Prometheus Histogram.

    Works for both plain functions and coroutine functions.

    Args:
        metric (Histogram): The Prometheus Histogram to record the timing in
        labels (Callable, optional): Function of `self` that returns the metric labels dictionary

    Returns:
        Callable: The decorated function
    """
    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _observe(metric, labels, args, time.perf_counter() - start_time, func.__name__)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _observe(metric, labels, args, time.perf_counter() - start_time, func.__name__)
        return wrapper
    return decorator


def track_errors(error_type: str, location) -> Callable:
    """
    A decorator factory that counts errors raised by a function, then re-raises them.

    Cancellation is not an error and is not counted.

    Args:
        error_type (str): Type of error (e.g., 'analyzer', 'ai', 'store')
        location (str | Callable): Where the error occurred, or a function of `self` returning it

    Example:
        @track_errors('analyzer', lambda self: self.name)
        async def analyze(self, query, context):
            ...
    """
    def resolve_location(args) -> str:
        if callable(location):
            return location(args[0]) if args else "unknown"
        return location

    def record(exc: Exception, args) -> None:
        where = resolve_location(args)
        ERROR_COUNT.labels(type=error_type, location=where).inc()
        logger.error(
            f"Error in {where} ({error_type}): {exc}",
            extra={'extra_fields': {'error_type': error_type, 'location': where, 'error': str(exc)}}
        )

    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    record(e, args)
                    raise
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                record(e, args)
                raise
        return wrapper
    return decorator
