"""Exceptions raised by the intake and routing pipeline."""


class TicketflowError(Exception):
    """Base class for pipeline errors."""


class ClassificationError(TicketflowError):
    """The classification model failed or returned something unusable."""

    def __init__(self, message: str, kind: str = "transport"):
        super().__init__(message)
        # "transport" (timeout, connection, non-2xx) or "malformed" (bad body)
        self.kind = kind


class RoutingConfigError(TicketflowError):
    """Tenant directory cannot route tickets (no offices, no agents, no automation agent)."""


class StorageError(TicketflowError):
    """A storage row that must exist was not found."""
