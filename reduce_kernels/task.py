from typing import TypedDict, TypeVar
import numpy as np

input_t = TypeVar("input_t", bound=np.ndarray)  # 1-D uint32 array
output_t = TypeVar("output_t", bound=int)  # uint32 total, wrapped modulo 2**32


class TestSpec(TypedDict, total=False):
    size: int
    seed: int
    high: int
    variant: str
    groupsize: int
