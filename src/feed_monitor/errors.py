"""Exceptions raised by Feed Monitor components."""

from __future__ import annotations


class FeedMonitorError(Exception):
    """Base class for errors raised by this package."""


class UnauthorizedError(FeedMonitorError):
    """The remote side rejected the request; sign in and try again."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class FeedFetchError(FeedMonitorError):
    """A feed page could not be fetched. Fatal to the running generation."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedFeedError(FeedFetchError):
    """The server answered, but the payload is not a feed page."""


class RuleNotFoundError(FeedMonitorError, KeyError):
    """No filter rule exists with the requested identifier."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id

    def __str__(self) -> str:
        return str(self.args[0])


class GenerationCancelled(FeedMonitorError):
    """Raised inside a sync generation once its cancellation token fired."""
