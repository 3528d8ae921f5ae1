"""
Result Pattern Implementation
Provides a standardized way for entry-layer services (webhook handling,
provider callbacks) to report outcomes without raising
"""

from typing import TypeVar, Generic, Optional, Any, Dict
from dataclasses import dataclass

from services.common.errors import FlowStackError

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """
    A generic Result class for service method returns.

    Examples:
        result = Result.success(intent)
        if result.is_success:
            print(result.data)

        result = Result.failure("Unknown checkout request", code="NotFound")
        if result.is_failure:
            print(result.error)
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, data: T = None, metadata: Optional[Dict[str, Any]] = None) -> 'Result[T]':
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def failure(cls,
                error: str,
                code: Optional[str] = None,
                metadata: Optional[Dict[str, Any]] = None) -> 'Result[T]':
        """
        Create a failure result.

        Args:
            error: Error message describing the failure
            code: Optional error code for programmatic handling
            metadata: Optional metadata about the failure
        """
        return cls(success=False, error=error, error_code=code, metadata=metadata)

    @classmethod
    def from_error(cls, error: FlowStackError, metadata: Optional[Dict[str, Any]] = None) -> 'Result[T]':
        """Wrap a domain error, keeping its kind as the error code"""
        return cls.failure(error.message, code=error.kind, metadata=metadata)

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def is_failure(self) -> bool:
        return not self.success
