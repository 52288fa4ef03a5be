import logging
import os
import random
from typing import Optional

import numpy as np
import torch

from reduce_kernels.errors import ConfigurationError

logger = logging.getLogger(__name__)


def set_seed(seed=42):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(seed)
        torch.cuda.manual_seed_all(seed)


def get_device(name: Optional[str] = None, workers: int = 1):
    """
    Get the requested reduction device, or the best available one.

    `name` is 'cuda' or 'host'; when omitted the REDUCE_BACKEND environment
    variable is consulted, then CUDA is used if present.
    """
    from reduce_kernels.host import HostDevice

    name = name or os.getenv("REDUCE_BACKEND")
    if name == "host":
        return HostDevice(workers=workers)
    if name == "cuda" or (name is None and torch.cuda.is_available()):
        from reduce_kernels.cuda_device import CudaDevice
        return CudaDevice()
    if name is not None:
        raise ConfigurationError(f"unknown backend '{name}', expected 'cuda' or 'host'")
    logger.warning("No compatible GPU found. Falling back to the host device.")
    return HostDevice(workers=workers)


def as_uint32(data) -> np.ndarray:
    """Contiguous 1-D uint32 view of `data`; rejects non-integers and values that do not fit."""
    array = np.asarray(data)
    if array.dtype != np.uint32 and array.size:
        if array.dtype.kind not in "iu":
            raise ConfigurationError(f"input must hold unsigned 32-bit integers, got dtype {array.dtype}")
        if array.min() < 0 or array.max() > 0xFFFFFFFF:
            raise ConfigurationError("input values must fit in an unsigned 32-bit integer")
    if array.dtype != np.uint32:
        array = array.astype(np.uint32)
    return np.ascontiguousarray(array.reshape(-1))


def verbose_equal(received, expected, max_print: int = 5) -> list[str]:
    """
    Check that two integer results (scalars or arrays) are exactly equal,
    providing detailed information about mismatches.

    Parameters:
    received: Value we actually got.
    expected: Value we expected to receive.
    max_print (int): Maximum number of mismatched elements to print.

    Returns:
         Empty list if equal, otherwise detailed error information
    """
    received = np.asarray(received)
    expected = np.asarray(expected)
    if received.shape != expected.shape:
        return ["SIZE MISMATCH"]

    mismatched = np.not_equal(received.astype(np.int64), expected.astype(np.int64))
    num_mismatched = int(np.count_nonzero(mismatched))

    if num_mismatched >= 1:
        if received.ndim == 0:
            return [f"ERROR: {int(received)} {int(expected)}"]
        mismatch_details = [f"Number of mismatched elements: {num_mismatched}"]
        for index in np.argwhere(mismatched)[:max_print]:
            i = tuple(index.tolist())
            mismatch_details.append(f"ERROR AT {i}: {received[i]} {expected[i]}")
        if num_mismatched > max_print:
            mismatch_details.append(f"... and {num_mismatched - max_print} more mismatched elements.")
        return mismatch_details

    return []
