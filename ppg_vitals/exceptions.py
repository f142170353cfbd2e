"""
Exception hierarchy for the PPG vitals core.

Contract violations (bad input, bad parameters) raise one of these
immediately.  Data-quality shortfalls are *not* errors: estimators return
neutral values with zero confidence instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VitalsError(Exception):
    """Base exception for all PPG vitals errors."""

    def __init__(
        self,
        message: str,
        code: str = "VITALS_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a plain dictionary (for logs / UI layers)."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidInput(VitalsError):
    """Input data violates the operation's contract (empty, non-finite, mismatched)."""

    def __init__(
        self,
        message: str,
        code: str = "INVALID_INPUT",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, code=code, details=details)


class InsufficientFrames(InvalidInput):
    """No frames were supplied to the extractor."""

    def __init__(self, message: str = "No frames supplied", received: int = 0) -> None:
        super().__init__(
            message=message,
            code="INSUFFICIENT_FRAMES",
            details={"received": received},
        )
        self.received = received


class SignalTooShort(InvalidInput):
    """Signal has fewer samples than the operation needs."""

    def __init__(self, length: int, required: int, operation: str = "unknown") -> None:
        super().__init__(
            message=f"{operation}: signal of length {length} is shorter than {required}",
            code="SIGNAL_TOO_SHORT",
            details={"length": length, "required": required, "operation": operation},
        )
        self.length = length
        self.required = required


class InvalidParameter(VitalsError):
    """A parameter or parameter combination is invalid."""

    def __init__(
        self,
        message: str,
        parameter: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            code="INVALID_PARAMETER",
            details={"parameter": parameter, **(details or {})},
        )
        self.parameter = parameter


class NoPeaksFound(VitalsError):
    """Peak detection produced nothing usable."""

    def __init__(self, message: str = "No peaks found in signal", length: int = 0) -> None:
        super().__init__(
            message=message,
            code="NO_PEAKS_FOUND",
            details={"length": length},
        )


class SingularMatrix(VitalsError):
    """Innovation covariance became singular inside a Kalman update."""

    def __init__(self, stream_key: str, sample_index: int) -> None:
        super().__init__(
            message=f"Singular innovation covariance in stream {stream_key!r} "
                    f"at sample {sample_index}",
            code="SINGULAR_MATRIX",
            details={"stream_key": stream_key, "sample_index": sample_index},
        )
        self.stream_key = stream_key
        self.sample_index = sample_index
