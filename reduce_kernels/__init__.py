from reduce_kernels.engine import ReductionEngine, ReductionResult, run_reduction
from reduce_kernels.errors import (
    CapabilityError,
    ConfigurationError,
    ReadbackError,
    ReductionError,
    ResourceExhaustedError,
)
from reduce_kernels.partition import LaunchGeometry, partition
from reduce_kernels.reference import run_reference, timed_reference
from reduce_kernels.strategy import ReductionStrategy
from reduce_kernels.utils import get_device

__version__ = "0.1.0"

__all__ = [
    "CapabilityError",
    "ConfigurationError",
    "LaunchGeometry",
    "ReadbackError",
    "ReductionEngine",
    "ReductionError",
    "ReductionResult",
    "ReductionStrategy",
    "ResourceExhaustedError",
    "get_device",
    "partition",
    "run_reduction",
    "run_reference",
    "timed_reference",
]
