import dataclasses
import logging
import time
from typing import Optional

import numpy as np

from reduce_kernels.device import (
    INPUT_BINDING,
    OUTPUT_BINDING,
    PARAMS_BINDING,
    BindGroup,
    BufferUsage,
    Device,
    DispatchStats,
)
from reduce_kernels.errors import ConfigurationError, ResourceExhaustedError
from reduce_kernels.partition import LaunchGeometry, is_power_of_two, partition
from reduce_kernels.strategy import ReductionStrategy
from reduce_kernels.task import input_t, output_t
from reduce_kernels.utils import as_uint32, get_device

logger = logging.getLogger(__name__)

MAX_ELEMENTS = 0xFFFFFFFF


@dataclasses.dataclass
class ReductionResult:
    value: int
    strategy: ReductionStrategy
    geometry: Optional[LaunchGeometry]
    elapsed_ns: int
    stats: Optional[DispatchStats] = None


class ReductionEngine:
    """
    Runs complete reduction passes of one strategy on one device.

    The kernel is validated and compiled once, at construction, so a device
    that cannot run the strategy is reported before any data is touched.
    Each `run` allocates its own input buffer and a zeroed accumulator cell,
    dispatches one group per `group_size * elements_per_thread` elements,
    waits on the fence and reads the cell back.
    """

    def __init__(self, device: Device, strategy, group_size: Optional[int] = None):
        self.device = device
        self.strategy = ReductionStrategy.parse(strategy)
        self.group_size = group_size if group_size is not None else self.strategy.default_group_size
        if not is_power_of_two(self.group_size):
            raise ConfigurationError(f"group size must be a power of two, got {self.group_size}")

        device.require(self.strategy.required_features)
        self.kernel = device.compile_kernel(
            device.default_source,
            self.strategy.entry_point,
            self.group_size,
            shared_bytes=self.strategy.shared_slots(self.group_size) * 4,
        )

    def geometry(self, n: int) -> LaunchGeometry:
        return partition(n, self.group_size, self.strategy.elements_per_thread,
                         self.device.limits.max_groups_per_dim)

    def run(self, data: input_t) -> ReductionResult:
        data = as_uint32(data)
        n = data.size
        if n == 0:
            return ReductionResult(0, self.strategy, None, 0)
        if n > MAX_ELEMENTS:
            raise ResourceExhaustedError("element count", n, MAX_ELEMENTS)

        geometry = self.geometry(n)
        device = self.device
        buffers = []
        try:
            input_buffer = device.allocate_buffer(n * 4, BufferUsage.STORAGE | BufferUsage.COPY_DST, "input")
            buffers.append(input_buffer)
            device.write_buffer(input_buffer, 0, data.astype("<u4", copy=False).tobytes())

            accumulator = device.allocate_buffer(
                4, BufferUsage.STORAGE | BufferUsage.COPY_SRC | BufferUsage.COPY_DST, "accumulator")
            buffers.append(accumulator)
            device.write_buffer(accumulator, 0, bytes(4))

            params = device.allocate_buffer(4, BufferUsage.UNIFORM | BufferUsage.COPY_DST, "params")
            buffers.append(params)
            device.write_buffer(params, 0, np.array([n], dtype="<u4").tobytes())

            bind_group = BindGroup({
                INPUT_BINDING: input_buffer,
                OUTPUT_BINDING: accumulator,
                PARAMS_BINDING: params,
            })
            start = time.perf_counter_ns()
            device.dispatch(self.kernel, bind_group, geometry.groups_x, geometry.groups_y)
            token = device.submit_and_fence().wait()
            end = time.perf_counter_ns()

            raw = device.read_buffer(token, accumulator, 0, 4)
        finally:
            for buffer in buffers:
                device.release_buffer(buffer)

        value = int.from_bytes(raw, "little")
        logger.debug("%s reduced %d elements in %d groups: %d (%.1f us)",
                     self.strategy.value, n, geometry.group_count, value, (end - start) / 1e3)
        return ReductionResult(value, self.strategy, geometry, end - start, token.stats)

    def __call__(self, data: input_t) -> output_t:
        return self.run(data).value


def run_reduction(variant, data: input_t, device: Optional[Device] = None,
                  group_size: Optional[int] = None) -> output_t:
    """
    Sums `data` with the given reduction strategy.
    Args:
        variant: ReductionStrategy or its name
        data: sequence of uint32 values
        device: device to run on; the best available one is opened and closed when omitted
        group_size: threads per group, defaults to the strategy's own
    Returns:
        Sum of all elements modulo 2**32
    """
    if device is not None:
        return ReductionEngine(device, variant, group_size).run(data).value
    with get_device() as owned:
        return ReductionEngine(owned, variant, group_size).run(data).value
