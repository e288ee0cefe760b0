"""Exception hierarchy shared by the capture and recovery layers."""

from __future__ import annotations


class PageFaultCrackerError(Exception):
    """Base class for all errors raised by this package."""


class ParseError(PageFaultCrackerError):
    """A trace record could not be decoded."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class MissingDataError(PageFaultCrackerError):
    """An algorithm needed optional event data (RIP, retired instructions, content) that is absent."""


class DesyncError(PageFaultCrackerError):
    """A fault arrived outside the expected fault sequence."""

    def __init__(self, faulted_gpa: int, expected_gpa: int, index: int) -> None:
        super().__init__(
            f"unexpected fault at 0x{faulted_gpa:x}, expected 0x{expected_gpa:x} "
            f"at sequence index {index}"
        )
        self.faulted_gpa = faulted_gpa
        self.expected_gpa = expected_gpa
        self.index = index


class ValidationFailure(PageFaultCrackerError):
    """A recovered candidate failed its cryptographic check."""


class HypervisorError(PageFaultCrackerError):
    """A call into the fault-tracking interface failed."""


class CaptureError(PageFaultCrackerError):
    """The live capture could not establish the state it needs."""


class CaptureCancelled(PageFaultCrackerError):
    """The capture was cancelled. Signals a clean shutdown."""


class TriggerError(PageFaultCrackerError):
    """The victim trigger transport failed."""
