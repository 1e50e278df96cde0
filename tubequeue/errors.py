"""
Task failure codes and the exceptions that carry them.

Codes are negative so they cannot be mistaken for a subprocess exit status.
"""

ERR_UNSUPPORTED_DOMAIN = -400
ERR_CONSTRAINT = -409
ERR_MALFORMED_PAYLOAD = -500
ERR_UNKNOWN_KIND = -501
ERR_RESOLVE_FAILED = -502
ERR_RESOLVE_PARSE = -503
ERR_DOWNLOAD_FAILED = -504
ERR_LIST_FAILED = -505
ERR_LIST_PARSE = -506
ERR_CHANNEL_LOOKUP = -507
ERR_DATABASE = -510
ERR_UNEXPECTED = -599

# Failures that would fail the same way on every attempt
NON_RETRYABLE = frozenset({
    ERR_UNSUPPORTED_DOMAIN,
    ERR_CONSTRAINT,
    ERR_MALFORMED_PAYLOAD,
    ERR_UNKNOWN_KIND,
})


def is_retryable(code) -> bool:
    return code not in NON_RETRYABLE


class TaskError(Exception):
    """Raised by a worker to end its task with a specific failure code."""

    def __init__(self, code: int, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class ToolError(Exception):
    """The extraction tool could not be run or exited non-zero."""

    def __init__(self, message: str, returncode=None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class RecordError(ValueError):
    """Tool output could not be decoded into the expected records."""
