import concurrent.futures
import contextlib
import logging
import threading
from typing import Iterable, Optional

import numpy as np

from reduce_kernels import host_kernels
from reduce_kernels.device import (
    ALL_FEATURES,
    INPUT_BINDING,
    OUTPUT_BINDING,
    PARAMS_BINDING,
    WEBGPU_LIMITS,
    BufferHandle,
    Device,
    DeviceLimits,
    DispatchCommand,
    DispatchStats,
)
from reduce_kernels.errors import CapabilityError

logger = logging.getLogger(__name__)

U32_MASK = 0xFFFFFFFF


class AtomicCell:
    """
    Emulated hardware atomic add on one uint32 slot of a buffer.
    The lock is shared by every cell of a device and stands in for the
    memory system serialising read-modify-writes to the same address.
    """

    def __init__(self, view: np.ndarray, index: int, lock: threading.Lock):
        self._view = view
        self._index = index
        self._lock = lock
        self.operations = 0

    def add(self, values) -> None:
        """One atomic add per element of `values`, issued by as many lanes."""
        values = np.asarray(values, dtype=np.uint32)
        if values.size == 0:
            return
        total = int(np.add.reduce(values, dtype=np.uint64))
        with self._lock:
            self._view[self._index] = (int(self._view[self._index]) + total) & U32_MASK
        self.operations += values.size

    def load(self) -> int:
        with self._lock:
            return int(self._view[self._index])


class SharedMemoryPool:
    """Fixed-size group-shared arenas, each owned by one running group at a time."""

    def __init__(self, slots: int):
        self.slots = slots
        self._free: list[np.ndarray] = []
        self._lock = threading.Lock()

    @contextlib.contextmanager
    def acquire(self):
        with self._lock:
            arena = self._free.pop() if self._free else np.empty(self.slots, dtype=np.uint32)
        arena.fill(0)
        try:
            yield arena
        finally:
            with self._lock:
                self._free.append(arena)


class GroupContext:
    """
    One thread-group executing in lockstep: every statement of a group
    program runs for all lanes before the next one starts.
    """

    def __init__(self, group_id: int, group_size: int, shared: np.ndarray, stats: DispatchStats):
        self.group_id = group_id
        self.group_size = group_size
        self.lanes = np.arange(group_size, dtype=np.int64)
        self.shared = shared
        self._stats = stats

    def global_index(self, elements_per_thread: int = 1) -> np.ndarray:
        return self.group_id * self.group_size * elements_per_thread + self.lanes

    def load(self, view: np.ndarray, idx: np.ndarray, n: int) -> np.ndarray:
        """Masked load: lanes whose index is past `n` read the identity 0."""
        values = np.zeros(idx.shape, dtype=np.uint32)
        in_range = idx < n
        values[in_range] = view[idx[in_range]]
        return values

    def barrier(self):
        self._stats.barriers += 1

    def shared_atomic_add(self, slot: int, values: np.ndarray):
        if values.size:
            self.shared[slot] = (int(self.shared[slot]) + int(np.add.reduce(values, dtype=np.uint64))) & U32_MASK
            self._stats.atomic_ops += values.size


class HostDevice(Device):
    """
    Simulated accelerator. Submissions run on a thread pool; groups of one
    dispatch are split into `workers` batches and, with `shuffle`, run in a
    random order, so nothing may rely on group ordering.
    """
    name = "host"

    def __init__(
        self,
        limits: Optional[DeviceLimits] = None,
        features: Iterable[str] = ALL_FEATURES,
        workers: int = 1,
        shuffle: bool = False,
        seed: Optional[int] = None,
    ):
        super().__init__(limits or WEBGPU_LIMITS, features)
        self.workers = max(1, workers)
        self._rng = np.random.default_rng(seed) if shuffle else None
        self._memory: dict[int, bytearray] = {}
        self._atomic_lock = threading.Lock()
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        # futures of every submission whose fence has not drained them yet
        self._outstanding: list[concurrent.futures.Future] = []

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    @property
    def default_source(self):
        return host_kernels.PROGRAMS

    def _allocate(self, handle: BufferHandle):
        self._memory[handle.id] = bytearray(handle.size)

    def _write(self, handle: BufferHandle, offset: int, data: bytes):
        self._memory[handle.id][offset:offset + len(data)] = data

    def _read(self, handle: BufferHandle, offset: int, length: int) -> bytes:
        return bytes(self._memory[handle.id][offset:offset + length])

    def _release(self, handle: BufferHandle):
        del self._memory[handle.id]

    def _view(self, handle: BufferHandle) -> np.ndarray:
        memory = self._memory[handle.id]
        return np.frombuffer(memory, dtype="<u4", count=len(memory) // 4)

    def _compile(self, source, entry_point: str):
        try:
            return source[entry_point]
        except (KeyError, TypeError) as e:
            raise CapabilityError(f"kernel source has no entry point '{entry_point}'") from e

    def _submit(self, commands: list[DispatchCommand]):
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="host-device")
        earlier = list(self._outstanding)
        futures = []
        for command in commands:
            group_ids = np.arange(command.groups_x * command.groups_y)
            if self._rng is not None:
                self._rng.shuffle(group_ids)
            logger.debug("running %d groups of %s", len(group_ids), command.kernel.entry_point)
            for batch in np.array_split(group_ids, min(self.workers, len(group_ids))):
                futures.append(self._executor.submit(self._run_groups, command, batch))

        self._outstanding.extend(futures)

        def wait() -> DispatchStats:
            # a fence also covers every earlier submission, waited on or not
            for future in earlier:
                future.result()
            stats = DispatchStats()
            for future in futures:
                stats.merge(future.result())
            self._outstanding = [f for f in self._outstanding if not f.done()]
            return stats

        return wait

    def _run_groups(self, command: DispatchCommand, group_ids: np.ndarray) -> DispatchStats:
        kernel = command.kernel
        data = self._view(command.bind_group[INPUT_BINDING])
        cell = AtomicCell(self._view(command.bind_group[OUTPUT_BINDING]), 0, self._atomic_lock)
        n = int(self._view(command.bind_group[PARAMS_BINDING])[0])
        pool = SharedMemoryPool(kernel.shared_bytes // 4)

        stats = DispatchStats()
        for group_id in group_ids:
            with pool.acquire() as shared:
                ctx = GroupContext(int(group_id), kernel.group_size, shared, stats)
                kernel.program(ctx, data, cell, n)
            stats.groups += 1
        stats.atomic_ops += cell.operations
        return stats
