"""
Domain error taxonomy

Every error carries a stable `kind` so the HTTP layer and task runners can
decide what to do with it without string matching:

- NotFound, InvalidTransition, Validation, TemplateNotFound are never retried
- TransientIO (and its transport/provider subclasses) may be retried
"""

from typing import Any, Dict, Optional


class FlowStackError(Exception):
    """Base class for all domain errors"""

    kind = 'FlowStackError'
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.kind, 'message': self.message}


class NotFoundError(FlowStackError):
    """Raised when an entity id does not resolve"""
    kind = 'NotFound'


class InvalidTransitionError(FlowStackError):
    """Raised when a lifecycle graph or status rule is violated"""
    kind = 'InvalidTransition'


class ValidationError(FlowStackError):
    """Raised for malformed input (e.g. a non-positive amount)"""
    kind = 'ValidationError'


class TemplateNotFoundError(FlowStackError):
    """Raised when a message template key is unknown"""
    kind = 'TemplateNotFound'


class TransientIOError(FlowStackError):
    """Storage or transport temporarily unavailable"""
    kind = 'TransientIOError'
    retryable = True


class TransportError(TransientIOError):
    """Custom exception for messaging transport failures"""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message, {'status_code': status_code})
        self.status_code = status_code
        self.response_body = response_body


class PaymentProviderError(TransientIOError):
    """Payment provider API temporarily failed or rejected a request"""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message, {'status_code': status_code})
        self.status_code = status_code
        self.response_body = response_body
