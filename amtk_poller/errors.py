"""Exception types raised while turning upstream train records into feed entities."""
from __future__ import annotations


class PollerError(Exception):
    """Base class for failures raised by the refresh pipeline."""


class UnknownRegionError(PollerError, ValueError):
    def __init__(self, region: str | None) -> None:
        super().__init__(f"Unknown timezone region: {region!r}")
        self.region = region


class MalformedTimestampError(PollerError, ValueError):
    def __init__(self, value: str | None, pattern: str) -> None:
        super().__init__(f"Timestamp {value!r} does not match {pattern!r}")
        self.value = value
        self.pattern = pattern


class MissingFieldError(PollerError, ValueError):
    def __init__(self, field: str, train_number: str | None = None) -> None:
        context = f" for train {train_number}" if train_number else ""
        super().__init__(f"Missing required field {field!r}{context}")
        self.field = field
        self.train_number = train_number


class MalformedFieldError(PollerError, ValueError):
    def __init__(self, field: str, value: object, train_number: str | None = None) -> None:
        context = f" for train {train_number}" if train_number else ""
        super().__init__(f"Invalid value {value!r} for field {field!r}{context}")
        self.field = field
        self.value = value
        self.train_number = train_number


class UnknownHeadingError(PollerError, ValueError):
    def __init__(self, heading: str) -> None:
        super().__init__(f"Unknown heading: {heading!r}")
        self.heading = heading


class FetchError(PollerError):
    """The train positions dataset could not be downloaded or decoded."""
