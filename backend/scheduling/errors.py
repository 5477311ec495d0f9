from __future__ import annotations


class SchedulingError(Exception):
    """Base class for failures raised by the scheduling engine."""


class InitializationError(SchedulingError):
    """The data manager is missing its scope or was used outside its lifecycle."""


class DataFetchError(SchedulingError):
    """A constraint source could not be loaded after exhausting retries."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class InstanceGenerationError(SchedulingError):
    """A template could not be expanded into dated instances."""

    def __init__(self, message: str, *, template_id=None) -> None:
        super().__init__(message)
        self.template_id = template_id


class ConcurrentModificationError(SchedulingError):
    """Persisted sessions changed after the caller's view was loaded."""

    def __init__(self, message: str, *, expected: str | None = None, actual: str | None = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual
