from __future__ import annotations


class ValidationError(ValueError):
    """Input rejected before any mutation was attempted."""


class RecordNotFound(LookupError):
    """A referenced account, holding, budget or entry does not exist."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"{kind} not found.")
        self.kind = kind


class UpstreamUnavailable(RuntimeError):
    """Raised when an external rate or price oracle cannot be reached."""
