import enum
import re

from reduce_kernels.errors import ConfigurationError


class ReductionStrategy(enum.Enum):
    """
    How one thread-group turns its slice of the input into a contribution
    to the global accumulator. Values contain letters only so that they can
    be named directly in test-case files.
    """
    NAIVE_ATOMIC = "naiveatomic"
    MASKED_ATOMIC = "maskedatomic"
    TREE_BASIC = "treebasic"
    TREE_PRECOMBINE = "treeprecombine"
    TREE_INTERLEAVED = "treeinterleaved"

    @property
    def entry_point(self) -> str:
        return self.name.lower()

    @property
    def elements_per_thread(self) -> int:
        return 2 if self is ReductionStrategy.TREE_PRECOMBINE else 1

    @property
    def default_group_size(self) -> int:
        if self in (ReductionStrategy.NAIVE_ATOMIC, ReductionStrategy.MASKED_ATOMIC):
            return 64
        return 256

    def shared_slots(self, group_size: int) -> int:
        """Number of uint32 slots of group-shared storage one group needs."""
        if self is ReductionStrategy.NAIVE_ATOMIC:
            return 0
        if self is ReductionStrategy.MASKED_ATOMIC:
            return 1
        return group_size

    @property
    def required_features(self) -> frozenset:
        if self is ReductionStrategy.NAIVE_ATOMIC:
            return frozenset({"compute", "atomics"})
        return frozenset({"compute", "atomics", "shared_memory"})

    @classmethod
    def parse(cls, name: "str | ReductionStrategy") -> "ReductionStrategy":
        """Accepts 'treeprecombine', 'TREE_PRECOMBINE', 'TreePrecombine' or 'tree-precombine'."""
        if isinstance(name, cls):
            return name
        key = re.sub(r"[^a-z]", "", str(name).lower())
        for strategy in cls:
            if strategy.value == key:
                return strategy
        choices = ", ".join(s.value for s in cls)
        raise ConfigurationError(f"unknown reduction strategy '{name}', expected one of: {choices}")
