"""Error taxonomy for package acquisition."""


class DebLayerError(Exception):
    """Base class for every error raised by deblayer."""


class NetworkError(DebLayerError):
    """A request failed. Transient failures are retried before this is raised."""

    def __init__(self, url: str, message: str, status_code: int | None = None, retryable: bool = False):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code
        self.retryable = retryable


class SignatureError(DebLayerError):
    """Repository metadata could not be authenticated; the whole source is rejected."""


class ChecksumMismatch(DebLayerError):
    def __init__(self, url: str, expected: str, actual: str):
        super().__init__(f"Checksum mismatch for {url}: expected {expected}, got {actual}")
        self.url = url
        self.expected = expected
        self.actual = actual


class ParseError(DebLayerError):
    """Malformed or unverifiable metadata."""


class PackageNotFound(DebLayerError):
    def __init__(self, name: str, suggestions: list[str] | None = None, detail: str | None = None):
        self.name = name
        self.suggestions = list(suggestions or [])
        message = f"Package not found: {name}"
        if detail:
            message += f" ({detail})"
        if self.suggestions:
            message += f"; did you mean: {', '.join(self.suggestions)}?"
        super().__init__(message)


class VersionConflict(DebLayerError):
    """Two requirements (or two resolved packages) cannot coexist."""

    def __init__(self, first: str, second: str, reason: str):
        super().__init__(f"Conflict between {first} and {second}: {reason}")
        self.first = first
        self.second = second
        self.reason = reason


class UnsatisfiableConstraint(DebLayerError):
    def __init__(self, requester: str, group: str):
        super().__init__(f"{requester} depends on '{group}', which no repository can satisfy")
        self.requester = requester
        self.group = group


class ExtractionError(DebLayerError):
    def __init__(self, package: str, message: str):
        super().__init__(f"Failed to extract {package}: {message}")
        self.package = package


class OperationTimeout(DebLayerError, TimeoutError):
    """The install deadline expired; nothing was marked valid."""
