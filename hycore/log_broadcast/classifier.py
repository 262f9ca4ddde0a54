"""Infers world status from console output lines."""

from ..models import WorldStatus


class StatusClassifier:
    """
    abstract class for status classifiers

    A classifier looks at one console line and returns the status it points
    to, or None when the line says nothing about the lifecycle.
    """

    def classify(self, line: str) -> WorldStatus | None: ...


class NullClassifier(StatusClassifier):
    """Used by backends that report their state through other means."""

    def classify(self, line: str) -> WorldStatus | None:
        return None


class SubstringClassifier(StatusClassifier):
    """
    Matches known substrings of the server's own log text.

    The server exposes no readiness interface, so this relies on the wording
    of its log output. The patterns are configuration, not a stable contract,
    and should give way to a real health check once the server offers one.
    """

    def __init__(
        self,
        running_patterns: list[str],
        authenticated_patterns: list[str] | None = None,
    ):
        self.running_patterns = list(running_patterns)
        self.authenticated_patterns = list(authenticated_patterns or [])

    def classify(self, line: str) -> WorldStatus | None:
        if any(pattern in line for pattern in self.authenticated_patterns):
            return WorldStatus.AUTHENTICATED
        if any(pattern in line for pattern in self.running_patterns):
            return WorldStatus.RUNNING
        return None
