import dataclasses

from reduce_kernels.errors import ConfigurationError, ResourceExhaustedError

SUPPORTED_ELEMENTS_PER_THREAD = (1, 2)


@dataclasses.dataclass(frozen=True)
class LaunchGeometry:
    n: int
    group_size: int
    elements_per_thread: int
    group_count: int
    groups_x: int
    groups_y: int = 1

    @property
    def elements_per_group(self) -> int:
        return self.group_size * self.elements_per_thread

    @property
    def thread_count(self) -> int:
        return self.groups_x * self.groups_y * self.group_size


def is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def partition(
    n: int,
    group_size: int = 256,
    elements_per_thread: int = 1,
    max_groups_per_dim: int = 65535,
) -> LaunchGeometry:
    """
    Computes the launch geometry for reducing `n` elements.

    Every group covers `group_size * elements_per_thread` consecutive elements;
    the last group may be partially filled and relies on masked reads.
    When more groups are needed than one grid dimension allows, the grid is
    folded into (groups_x, groups_y) and kernels linearise the group id as
    `y * groups_x + x`. Groups past `group_count` in the folded grid see only
    out-of-range indices and contribute nothing.

    Args:
        n: Number of input elements, must be positive.
        group_size: Threads per group, a power of two.
        elements_per_thread: 1, or 2 for the pre-combining tree.
        max_groups_per_dim: Device limit on groups along one grid dimension.
    Returns:
        LaunchGeometry with group_count * group_size * elements_per_thread >= n.
    """
    if n <= 0:
        raise ConfigurationError(f"input length must be positive, got {n}")
    if not is_power_of_two(group_size):
        raise ConfigurationError(f"group size must be a power of two, got {group_size}")
    if elements_per_thread not in SUPPORTED_ELEMENTS_PER_THREAD:
        raise ConfigurationError(
            f"elements per thread must be one of {SUPPORTED_ELEMENTS_PER_THREAD}, got {elements_per_thread}"
        )

    per_group = group_size * elements_per_thread
    group_count = (n + per_group - 1) // per_group
    if group_count <= max_groups_per_dim:
        return LaunchGeometry(n, group_size, elements_per_thread, group_count, group_count, 1)

    groups_x = max_groups_per_dim
    groups_y = (group_count + groups_x - 1) // groups_x
    if groups_y > max_groups_per_dim:
        raise ResourceExhaustedError("group count", group_count, max_groups_per_dim * max_groups_per_dim)
    return LaunchGeometry(n, group_size, elements_per_thread, group_count, groups_x, groups_y)
