"""
Monitoring package initializer.

This package exposes Prometheus metrics and helper decorators for tracking routing,
analyzer and gap-pipeline behaviour.
"""

from .metrics import (
    QUERY_LATENCY,
    QUERY_COUNT,
    ERROR_COUNT,
    ANALYZER_PROCESSING_TIME,
    AI_REQUEST_TIME,
    DEGRADED_RESPONSES,
    GAPS_INGESTED,
    PROGRESS_DELIVERIES,
    track_latency,
    track_errors,
)

__all__ = [
    'QUERY_LATENCY',
    'QUERY_COUNT',
    'ERROR_COUNT',
    'ANALYZER_PROCESSING_TIME',
    'AI_REQUEST_TIME',
    'DEGRADED_RESPONSES',
    'GAPS_INGESTED',
    'PROGRESS_DELIVERIES',
    'track_latency',
    'track_errors',
]
