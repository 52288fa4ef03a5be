import numpy as np
import pytest

from reduce_kernels import run_reduction
from reduce_kernels.device import DeviceLimits
from reduce_kernels.engine import ReductionEngine
from reduce_kernels.errors import (
    CapabilityError,
    ConfigurationError,
    ResourceExhaustedError,
)
from reduce_kernels.host import HostDevice
from reduce_kernels.reference import generate_input, ref_kernel
from reduce_kernels.strategy import ReductionStrategy

ALL_STRATEGIES = list(ReductionStrategy)


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_one_to_nine(host_device, strategy):
    data = np.arange(1, 10, dtype=np.uint32)
    result = ReductionEngine(host_device, strategy, group_size=8).run(data)
    assert result.value == 45 == ref_kernel(data)


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
@pytest.mark.parametrize("size", [1, 63, 64, 65, 511, 512, 513, 1000, 4096, 10007])
def test_matches_reference(host_device, strategy, size):
    data = generate_input(size=size, seed=size)
    assert ReductionEngine(host_device, strategy).run(data).value == ref_kernel(data)


@pytest.mark.parametrize("size", [1600, 2048, 3000])
def test_strategies_agree(host_device, size):
    # 2048 is an exact multiple of every default group geometry, 1600 only of
    # the 64-thread ones and 3000 of none.
    data = generate_input(size=size, seed=17)
    results = {s: ReductionEngine(host_device, s).run(data).value for s in ALL_STRATEGIES}
    assert set(results.values()) == {ref_kernel(data)}


def test_exact_and_masked_tail_agree(host_device):
    engine = ReductionEngine(host_device, ReductionStrategy.TREE_PRECOMBINE, group_size=64)
    exact = np.ones(1024, dtype=np.uint32)
    assert engine.geometry(exact.size).group_count * 128 == exact.size
    tail = np.ones(1000, dtype=np.uint32)
    assert engine.run(exact).value == 1024
    assert engine.run(tail).value == 1000


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_overflow_wraps(host_device, strategy):
    data = np.full(1000, 0xFFFFFFF0, dtype=np.uint32)
    value = ReductionEngine(host_device, strategy).run(data).value
    assert value == (1000 * 0xFFFFFFF0) % 2**32
    assert value != 1000 * 0xFFFFFFF0


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_random_full_range(host_device, strategy):
    data = generate_input(size=5000, seed=2, high=2**32)
    assert ReductionEngine(host_device, strategy).run(data).value == ref_kernel(data)


def test_empty_input_needs_no_dispatch(host_device, monkeypatch):
    def fail():
        raise AssertionError("no submission expected")

    monkeypatch.setattr(host_device, "submit_and_fence", fail)
    result = ReductionEngine(host_device, ReductionStrategy.TREE_PRECOMBINE).run([])
    assert result.value == 0
    assert result.geometry is None


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_single_element(host_device, strategy):
    assert ReductionEngine(host_device, strategy).run([4000000000]).value == 4000000000


def test_repeated_runs_are_identical(host_device):
    data = generate_input(size=100_000, seed=5)
    engine = ReductionEngine(host_device, ReductionStrategy.TREE_PRECOMBINE)
    first = engine.run(data)
    second = engine.run(data)
    assert first.value == second.value == ref_kernel(data)


def test_one_million_random_values(host_device):
    data = generate_input(size=1_000_000, seed=125432)
    expected = ref_kernel(data)
    for strategy in ALL_STRATEGIES:
        result = ReductionEngine(host_device, strategy).run(data)
        assert result.value == expected
        assert result.elapsed_ns > 0


def test_group_order_does_not_matter():
    data = generate_input(size=50_000, seed=8)
    with HostDevice(workers=4, shuffle=True, seed=3) as device:
        for strategy in ALL_STRATEGIES:
            assert ReductionEngine(device, strategy).run(data).value == ref_kernel(data)


def test_dispatch_stats(host_device):
    n = 1000
    data = np.ones(n, dtype=np.uint32)

    naive = ReductionEngine(host_device, ReductionStrategy.NAIVE_ATOMIC).run(data)
    assert naive.stats.atomic_ops == n
    assert naive.stats.barriers == 0
    assert naive.stats.groups == 16

    masked = ReductionEngine(host_device, ReductionStrategy.MASKED_ATOMIC).run(data)
    assert masked.stats.atomic_ops == n + masked.geometry.group_count
    assert masked.stats.barriers == 2 * masked.geometry.group_count

    for strategy in (ReductionStrategy.TREE_BASIC, ReductionStrategy.TREE_PRECOMBINE,
                     ReductionStrategy.TREE_INTERLEAVED):
        result = ReductionEngine(host_device, strategy).run(data)
        groups = result.geometry.group_count
        assert result.stats.atomic_ops == groups
        # one barrier after the load, one per fold round
        assert result.stats.barriers == groups * (1 + 8)

    assert ReductionEngine(host_device, ReductionStrategy.TREE_PRECOMBINE).run(data).geometry.group_count == 2


def test_folded_grid():
    limits = DeviceLimits(max_group_size=256, max_shared_bytes=16384, max_groups_per_dim=4,
                          max_buffer_bytes=2**20)
    data = generate_input(size=100, seed=4)
    with HostDevice(limits=limits) as device:
        for strategy in ALL_STRATEGIES:
            result = ReductionEngine(device, strategy, group_size=8).run(data)
            assert result.geometry.groups_y > 1
            assert result.stats.groups == result.geometry.groups_x * result.geometry.groups_y
            assert result.value == ref_kernel(data)


def test_group_size_beyond_device_limit(host_device):
    with pytest.raises(ResourceExhaustedError) as info:
        ReductionEngine(host_device, ReductionStrategy.TREE_BASIC, group_size=512)
    assert (info.value.requested, info.value.available) == (512, 256)


def test_shared_memory_beyond_device_limit():
    limits = DeviceLimits(max_group_size=1024, max_shared_bytes=1024, max_groups_per_dim=65535,
                          max_buffer_bytes=2**20)
    with HostDevice(limits=limits) as device:
        with pytest.raises(ResourceExhaustedError) as info:
            ReductionEngine(device, ReductionStrategy.TREE_BASIC, group_size=512)
        assert info.value.resource == "group shared memory"
        assert info.value.requested == 2048
        ReductionEngine(device, ReductionStrategy.NAIVE_ATOMIC, group_size=512)


def test_buffer_beyond_device_limit():
    limits = DeviceLimits(max_group_size=256, max_shared_bytes=16384, max_groups_per_dim=65535,
                          max_buffer_bytes=1024)
    with HostDevice(limits=limits) as device:
        engine = ReductionEngine(device, ReductionStrategy.TREE_PRECOMBINE)
        assert engine.run(np.ones(256, dtype=np.uint32)).value == 256
        with pytest.raises(ResourceExhaustedError) as info:
            engine.run(np.ones(257, dtype=np.uint32))
        assert (info.value.requested, info.value.available) == (1028, 1024)


@pytest.mark.parametrize("group_size", [0, 100])
def test_group_size_must_be_power_of_two(host_device, group_size):
    with pytest.raises(ConfigurationError, match="power of two"):
        ReductionEngine(host_device, ReductionStrategy.TREE_BASIC, group_size=group_size)


def test_float_input_rejected(host_device):
    engine = ReductionEngine(host_device, ReductionStrategy.TREE_BASIC)
    with pytest.raises(ConfigurationError):
        engine.run([1.5, 2.7])


def test_missing_capabilities():
    with HostDevice(features={"compute", "atomics"}) as device:
        with pytest.raises(CapabilityError, match="shared_memory"):
            ReductionEngine(device, ReductionStrategy.TREE_PRECOMBINE)
        assert ReductionEngine(device, ReductionStrategy.NAIVE_ATOMIC).run([1, 2, 3]).value == 6


def test_run_reduction_with_device(host_device):
    data = generate_input(size=3000, seed=12)
    assert run_reduction("treeprecombine", data, device=host_device) == ref_kernel(data)
    assert run_reduction(ReductionStrategy.NAIVE_ATOMIC, data, device=host_device, group_size=128) == ref_kernel(data)


def test_run_reduction_opens_device(monkeypatch):
    monkeypatch.setenv("REDUCE_BACKEND", "host")
    assert run_reduction("TreeBasic", [1, 2, 3, 4, 5, 6, 7, 8, 9]) == 45
