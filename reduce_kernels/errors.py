class ReductionError(RuntimeError):
    """Base class for everything the reduction engine and its devices raise."""


class CapabilityError(ReductionError):
    """The device or runtime lacks a feature the kernel needs."""


class ConfigurationError(ReductionError, ValueError):
    """Invalid launch geometry or buffer usage, rejected before dispatch."""


class ResourceExhaustedError(ReductionError):
    def __init__(self, resource: str, requested: int, available: int):
        self.resource = resource
        self.requested = requested
        self.available = available
        super().__init__(
            f"{resource} exceeds device limit: requested {requested}, available {available}"
        )


class ReadbackError(ReductionError):
    """A read was attempted before all submitted work completed."""
