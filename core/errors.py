# core/errors.py
"""Exception types shared across the proxy core"""


class StreamProxyError(Exception):
    """Base class for all proxy core errors"""


class ValidationError(StreamProxyError):
    """Record or request body does not match the expected schema"""

    def __init__(self, message: str, fields=None):
        super().__init__(message)
        self.fields = list(fields or [])


class StoreError(StreamProxyError):
    """Durable store rejected or failed a read/write"""


class HistoryLookupError(StoreError):
    """Recent-request history could not be queried"""
