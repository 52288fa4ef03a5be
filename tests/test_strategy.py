import pytest

from reduce_kernels.errors import ConfigurationError
from reduce_kernels.strategy import ReductionStrategy


@pytest.mark.parametrize("name", ["treeprecombine", "TREE_PRECOMBINE", "TreePrecombine", "tree-precombine"])
def test_parse(name):
    assert ReductionStrategy.parse(name) is ReductionStrategy.TREE_PRECOMBINE


def test_parse_unknown():
    with pytest.raises(ConfigurationError, match="unknown reduction strategy"):
        ReductionStrategy.parse("bogus")


def test_only_precombine_takes_two_elements():
    assert [s for s in ReductionStrategy if s.elements_per_thread == 2] == [ReductionStrategy.TREE_PRECOMBINE]


def test_shared_storage():
    assert ReductionStrategy.NAIVE_ATOMIC.shared_slots(64) == 0
    assert ReductionStrategy.MASKED_ATOMIC.shared_slots(64) == 1
    assert ReductionStrategy.TREE_BASIC.shared_slots(256) == 256
    assert "shared_memory" not in ReductionStrategy.NAIVE_ATOMIC.required_features
    assert "shared_memory" in ReductionStrategy.TREE_INTERLEAVED.required_features


def test_entry_points():
    assert ReductionStrategy.TREE_PRECOMBINE.entry_point == "tree_precombine"
    assert ReductionStrategy.NAIVE_ATOMIC.default_group_size == 64
    assert ReductionStrategy.TREE_BASIC.default_group_size == 256
