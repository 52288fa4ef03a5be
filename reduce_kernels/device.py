"""
Device collaborator interface shared by every backend.

The base class owns the validation that must not differ between backends:
device limits, buffer usage flags, and the rule that buffers can only be read
back with a CompletionToken covering all submitted work. Backends implement
the underscore hooks.
"""
import abc
import dataclasses
import enum
import itertools
import logging
from typing import Any, Iterable, Optional

from reduce_kernels.errors import (
    CapabilityError,
    ConfigurationError,
    ReadbackError,
    ResourceExhaustedError,
)

logger = logging.getLogger(__name__)

# Binding slots of the reduction kernels.
INPUT_BINDING = 0
OUTPUT_BINDING = 1
PARAMS_BINDING = 2

ALL_FEATURES = frozenset({"compute", "atomics", "shared_memory"})


class BufferUsage(enum.Flag):
    STORAGE = enum.auto()
    UNIFORM = enum.auto()
    COPY_SRC = enum.auto()
    COPY_DST = enum.auto()
    MAP_READ = enum.auto()


@dataclasses.dataclass(frozen=True)
class DeviceLimits:
    max_group_size: int
    max_shared_bytes: int
    max_groups_per_dim: int
    max_buffer_bytes: int


# Defaults guaranteed by every WebGPU implementation.
WEBGPU_LIMITS = DeviceLimits(
    max_group_size=256,
    max_shared_bytes=16384,
    max_groups_per_dim=65535,
    max_buffer_bytes=134217728,
)


@dataclasses.dataclass(eq=False)
class BufferHandle:
    id: int
    size: int
    usage: BufferUsage
    label: str = ""
    released: bool = False


@dataclasses.dataclass(frozen=True)
class KernelHandle:
    entry_point: str
    group_size: int
    shared_bytes: int
    program: Any = dataclasses.field(default=None, compare=False, repr=False)


@dataclasses.dataclass
class BindGroup:
    entries: dict

    def __getitem__(self, binding: int) -> BufferHandle:
        return self.entries[binding]


@dataclasses.dataclass
class DispatchCommand:
    kernel: KernelHandle
    bind_group: BindGroup
    groups_x: int
    groups_y: int


@dataclasses.dataclass
class DispatchStats:
    groups: int = 0
    barriers: int = 0
    atomic_ops: int = 0

    def merge(self, other: "DispatchStats"):
        self.groups += other.groups
        self.barriers += other.barriers
        self.atomic_ops += other.atomic_ops


@dataclasses.dataclass(frozen=True)
class CompletionToken:
    """Proof that all work submitted up to `serial` has finished on `device`."""
    device: "Device" = dataclasses.field(repr=False)
    serial: int
    stats: Optional[DispatchStats] = None


class Fence:
    """
    Completion signal for one submission. The only way to obtain a
    CompletionToken is to wait on a fence.
    """

    def __init__(self, device: "Device", serial: int, waiter):
        self._device = device
        self._serial = serial
        self._waiter = waiter
        self._token: Optional[CompletionToken] = None

    @property
    def serial(self) -> int:
        return self._serial

    def wait(self) -> CompletionToken:
        if self._token is None:
            stats = self._waiter()
            self._token = CompletionToken(self._device, self._serial, stats)
            logger.debug("fence %d resolved on %s", self._serial, self._device.name)
        return self._token


class Device(abc.ABC):
    name = "device"

    def __init__(self, limits: DeviceLimits, features: Iterable[str] = ALL_FEATURES):
        self.limits = limits
        self.features = frozenset(features)
        self._buffer_ids = itertools.count(1)
        self._pending: list[DispatchCommand] = []
        self._submitted = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Releases backend resources; buffers must not be used afterwards."""

    # -- capability -------------------------------------------------------

    def require(self, features: Iterable[str]):
        missing = set(features) - self.features
        if missing:
            raise CapabilityError(
                f"{self.name} device does not support: {', '.join(sorted(missing))}"
            )

    @property
    @abc.abstractmethod
    def default_source(self) -> Any:
        """Kernel source containing one entry point per reduction strategy."""

    # -- buffers ----------------------------------------------------------

    def allocate_buffer(self, size: int, usage: BufferUsage, label: str = "") -> BufferHandle:
        if size <= 0:
            raise ConfigurationError(f"buffer size must be positive, got {size}")
        if size > self.limits.max_buffer_bytes:
            raise ResourceExhaustedError("buffer size", size, self.limits.max_buffer_bytes)
        handle = BufferHandle(next(self._buffer_ids), size, usage, label)
        self._allocate(handle)
        return handle

    def write_buffer(self, handle: BufferHandle, offset: int, data: bytes):
        self._check_live(handle)
        if not handle.usage & BufferUsage.COPY_DST:
            raise ConfigurationError(f"buffer '{handle.label}' was not created with COPY_DST")
        data = bytes(data)
        self._check_range(handle, offset, len(data))
        self._write(handle, offset, data)

    def read_buffer(self, token: CompletionToken, handle: BufferHandle, offset: int, length: int) -> bytes:
        if not isinstance(token, CompletionToken):
            raise TypeError(f"read_buffer needs a CompletionToken, got {type(token).__name__}")
        if token.device is not self:
            raise ReadbackError("completion token belongs to a different device")
        if token.serial < self._submitted or self._pending:
            raise ReadbackError(
                f"token {token.serial} does not cover submitted work up to {self._submitted}"
                + (" and recorded dispatches are still unsubmitted" if self._pending else "")
            )
        self._check_live(handle)
        if not handle.usage & (BufferUsage.COPY_SRC | BufferUsage.MAP_READ):
            raise ConfigurationError(f"buffer '{handle.label}' is not readable by the host")
        self._check_range(handle, offset, length)
        return self._read(handle, offset, length)

    def release_buffer(self, handle: BufferHandle):
        if not handle.released:
            self._release(handle)
            handle.released = True

    def _check_live(self, handle: BufferHandle):
        if handle.released:
            raise ConfigurationError(f"buffer '{handle.label}' has been released")

    def _check_range(self, handle: BufferHandle, offset: int, length: int):
        if offset < 0 or length < 0 or offset + length > handle.size:
            raise ConfigurationError(
                f"range [{offset}, {offset + length}) is outside buffer '{handle.label}' of {handle.size} bytes"
            )

    # -- kernels ----------------------------------------------------------

    def compile_kernel(self, source: Any, entry_point: str, group_size: int, shared_bytes: int = 0) -> KernelHandle:
        self.require({"compute"})
        if shared_bytes:
            self.require({"shared_memory"})
        if group_size > self.limits.max_group_size:
            raise ResourceExhaustedError("group size", group_size, self.limits.max_group_size)
        if shared_bytes > self.limits.max_shared_bytes:
            raise ResourceExhaustedError("group shared memory", shared_bytes, self.limits.max_shared_bytes)
        program = self._compile(source, entry_point)
        logger.debug("compiled %s (group size %d, %d shared bytes) on %s",
                     entry_point, group_size, shared_bytes, self.name)
        return KernelHandle(entry_point, group_size, shared_bytes, program)

    def dispatch(self, kernel: KernelHandle, bind_group: BindGroup, group_count_x: int, group_count_y: int = 1):
        for count in (group_count_x, group_count_y):
            if count <= 0:
                raise ConfigurationError(f"group counts must be positive, got ({group_count_x}, {group_count_y})")
            if count > self.limits.max_groups_per_dim:
                raise ResourceExhaustedError("groups per dimension", count, self.limits.max_groups_per_dim)
        for binding, handle in bind_group.entries.items():
            self._check_live(handle)
            wanted = BufferUsage.UNIFORM if binding == PARAMS_BINDING else BufferUsage.STORAGE
            if not handle.usage & wanted:
                raise ConfigurationError(f"binding {binding} needs a {wanted.name} buffer")
        self._pending.append(DispatchCommand(kernel, bind_group, group_count_x, group_count_y))

    def submit_and_fence(self) -> Fence:
        commands, self._pending = self._pending, []
        self._submitted += 1
        logger.debug("submitting %d dispatch(es) as serial %d on %s", len(commands), self._submitted, self.name)
        waiter = self._submit(commands)
        return Fence(self, self._submitted, waiter)

    # -- backend hooks ----------------------------------------------------

    @abc.abstractmethod
    def _allocate(self, handle: BufferHandle):
        ...

    @abc.abstractmethod
    def _write(self, handle: BufferHandle, offset: int, data: bytes):
        ...

    @abc.abstractmethod
    def _read(self, handle: BufferHandle, offset: int, length: int) -> bytes:
        ...

    @abc.abstractmethod
    def _release(self, handle: BufferHandle):
        ...

    @abc.abstractmethod
    def _compile(self, source: Any, entry_point: str) -> Any:
        ...

    @abc.abstractmethod
    def _submit(self, commands: list[DispatchCommand]):
        """Starts the commands and returns a callable that blocks until they finish."""
