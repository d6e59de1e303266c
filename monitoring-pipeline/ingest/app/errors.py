# ingest/app/errors.py
"""Errors raised by the ingestion and dashboard paths.

Each carries the HTTP status it maps to; ``main`` turns any of them into a
``{"error": message}`` response.
"""

from typing import Optional


class PipelineError(Exception):
    status_code = 500
    message = "internal error"

    def __init__(self, detail: str = "", *, message: Optional[str] = None):
        super().__init__(detail or self.message)
        if message is not None:
            self.message = message


class MalformedPayload(PipelineError):
    status_code = 400
    message = "Invalid JSON payload"


class MissingHostID(PipelineError):
    status_code = 400
    message = "HostID is missing in system info"


class MissingTimestamp(PipelineError):
    status_code = 400
    message = "collected_at timestamp is missing or zero"


class InvalidMetric(PipelineError):
    status_code = 400
    message = "Invalid metric name specified"


class InvalidDuration(PipelineError):
    status_code = 400
    message = "Invalid duration format"


class HostNotFound(PipelineError):
    status_code = 404
    message = "Host details not found"


class StoreUnavailable(PipelineError):
    status_code = 500
    message = "Metrics store unavailable"


class StoreWriteFailed(PipelineError):
    status_code = 500
    message = "Failed to store statistics"


class StoreQueryFailed(PipelineError):
    status_code = 500
    message = "Failed to query metrics"


class RequestCancelled(PipelineError):
    status_code = 499
    message = "Client closed request"
