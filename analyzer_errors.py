# -*- coding: utf-8 -*-

"""Error taxonomy for the Behinder traffic pipeline.

Only CaptureReadError aborts a run. Every other error is raised for the
smallest unit it concerns (flow, message, exchange side or artifact),
logged by the pipeline and then skipped.
"""


class AnalyzerError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"

    def __init__(self, message, context=None):
        super().__init__(message)
        self.context = context or {}

    def describe(self) -> str:
        if not self.context:
            return f"{self.kind}: {self}"
        where = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.kind} ({where}): {self}"


class CaptureReadError(AnalyzerError):
    """The capture could not be read or dissected. Fatal."""

    kind = "capture-read"


class StreamReassemblyError(AnalyzerError):
    """A flow could not be put back into a consistent byte order."""

    kind = "stream-reassembly"


class HttpParseError(AnalyzerError):
    """A single HTTP message had malformed framing."""

    kind = "http-parse"


class DecryptError(AnalyzerError):
    """No supported codec produced a valid plaintext."""

    kind = "decrypt"


class IoWriteError(AnalyzerError):
    """One artifact could not be written to disk."""

    kind = "io-write"
