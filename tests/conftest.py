import pytest

from reduce_kernels.host import HostDevice


@pytest.fixture
def host_device():
    with HostDevice() as device:
        yield device
