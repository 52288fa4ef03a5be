import time

import numpy as np

from reduce_kernels.task import input_t, output_t
from reduce_kernels.utils import as_uint32, verbose_equal


def ref_kernel(data: input_t) -> output_t:
    """
    Reference implementation of the vector sum on the host.
    Args:
        data: 1-D array of uint32 values
    Returns:
        Sum of all elements, wrapped modulo 2**32 exactly like the device kernels
    """
    return int(np.add.reduce(as_uint32(data), dtype=np.uint32))


run_reference = ref_kernel


def timed_reference(data: input_t) -> tuple[int, int]:
    """Runs the reference and returns (value, elapsed nanoseconds)."""
    data = as_uint32(data)
    start = time.perf_counter_ns()
    value = ref_kernel(data)
    end = time.perf_counter_ns()
    return value, end - start


def generate_input(size: int, seed: int, high: int = 1000) -> input_t:
    """
    Generates random uint32 input uniformly distributed in [0, high).
    A `high` close to 2**32 produces inputs whose true sum overflows.
    Returns:
        Array to be reduced
    """
    gen = np.random.default_rng(seed)
    return gen.integers(0, high, size=size, dtype=np.uint64).astype(np.uint32)


def check_implementation(data: input_t, output: output_t) -> str:
    expected = ref_kernel(data)
    reasons = verbose_equal(output, expected)

    if len(reasons) > 0:
        return "mismatch found! custom implementation doesn't match reference: " + " ".join(reasons)

    return ''
