import hashlib
import logging

import torch

from reduce_kernels.device import (
    ALL_FEATURES,
    INPUT_BINDING,
    OUTPUT_BINDING,
    PARAMS_BINDING,
    BufferHandle,
    Device,
    DeviceLimits,
    DispatchCommand,
)
from reduce_kernels.errors import CapabilityError

logger = logging.getLogger(__name__)

reduce_cuda_source = """
#include <torch/extension.h>

// Linear group id of a grid that may be folded into two dimensions.
__device__ __forceinline__ unsigned int group_id() {
    return blockIdx.y * gridDim.x + blockIdx.x;
}

__device__ __forceinline__ unsigned int masked_load(const unsigned int* __restrict__ data,
                                                    unsigned long long idx,
                                                    unsigned int n) {
    return idx < n ? data[idx] : 0u;
}

__global__ void naive_atomic_kernel(const unsigned int* __restrict__ data,
                                    unsigned int* __restrict__ output,
                                    const unsigned int* __restrict__ params) {
    unsigned int n = params[0];
    unsigned long long idx = (unsigned long long)group_id() * blockDim.x + threadIdx.x;
    if (idx < n) {
        atomicAdd(output, data[idx]);
    }
}

__global__ void masked_atomic_kernel(const unsigned int* __restrict__ data,
                                     unsigned int* __restrict__ output,
                                     const unsigned int* __restrict__ params) {
    extern __shared__ unsigned int sdata[];
    unsigned int n = params[0];
    unsigned int tid = threadIdx.x;
    unsigned long long idx = (unsigned long long)group_id() * blockDim.x + tid;

    if (tid == 0) {
        sdata[0] = 0;
    }
    __syncthreads();

    if (idx < n) {
        atomicAdd(&sdata[0], data[idx]);
    }
    __syncthreads();

    if (tid == 0) {
        atomicAdd(output, sdata[0]);
    }
}

__device__ void fold_sequential(unsigned int* sdata, unsigned int tid) {
    for (unsigned int stride = blockDim.x / 2; stride > 0; stride >>= 1) {
        if (tid < stride) {
            sdata[tid] += sdata[tid + stride];
        }
        __syncthreads();
    }
}

__global__ void tree_basic_kernel(const unsigned int* __restrict__ data,
                                  unsigned int* __restrict__ output,
                                  const unsigned int* __restrict__ params) {
    extern __shared__ unsigned int sdata[];
    unsigned int n = params[0];
    unsigned int tid = threadIdx.x;
    unsigned long long idx = (unsigned long long)group_id() * blockDim.x + tid;

    sdata[tid] = masked_load(data, idx, n);
    __syncthreads();

    fold_sequential(sdata, tid);

    if (tid == 0) {
        atomicAdd(output, sdata[0]);
    }
}

__global__ void tree_precombine_kernel(const unsigned int* __restrict__ data,
                                       unsigned int* __restrict__ output,
                                       const unsigned int* __restrict__ params) {
    extern __shared__ unsigned int sdata[];
    unsigned int n = params[0];
    unsigned int tid = threadIdx.x;
    unsigned long long idx = (unsigned long long)group_id() * blockDim.x * 2 + tid;

    sdata[tid] = masked_load(data, idx, n) + masked_load(data, idx + blockDim.x, n);
    __syncthreads();

    fold_sequential(sdata, tid);

    if (tid == 0) {
        atomicAdd(output, sdata[0]);
    }
}

__global__ void tree_interleaved_kernel(const unsigned int* __restrict__ data,
                                        unsigned int* __restrict__ output,
                                        const unsigned int* __restrict__ params) {
    extern __shared__ unsigned int sdata[];
    unsigned int n = params[0];
    unsigned int tid = threadIdx.x;
    unsigned long long idx = (unsigned long long)group_id() * blockDim.x + tid;

    sdata[tid] = masked_load(data, idx, n);
    __syncthreads();

    for (unsigned int stride = 1; stride < blockDim.x; stride *= 2) {
        if (tid % (2 * stride) == 0) {
            sdata[tid] += sdata[tid + stride];
        }
        __syncthreads();
    }

    if (tid == 0) {
        atomicAdd(output, sdata[0]);
    }
}

typedef void (*reduce_kernel_t)(const unsigned int*, unsigned int*, const unsigned int*);

void launch(reduce_kernel_t kernel, torch::Tensor data, torch::Tensor output, torch::Tensor params,
            int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes) {
    TORCH_CHECK(data.device().is_cuda(), "data must be a CUDA tensor");
    TORCH_CHECK(output.device().is_cuda(), "output must be a CUDA tensor");
    TORCH_CHECK(params.device().is_cuda(), "params must be a CUDA tensor");

    dim3 blocks(groups_x, groups_y, 1);
    dim3 threads(group_size, 1, 1);
    kernel<<<blocks, threads, shared_bytes>>>(
        reinterpret_cast<const unsigned int*>(data.data_ptr<uint8_t>()),
        reinterpret_cast<unsigned int*>(output.data_ptr<uint8_t>()),
        reinterpret_cast<const unsigned int*>(params.data_ptr<uint8_t>())
    );

    cudaError_t err = cudaGetLastError();
    if (err != cudaSuccess) {
        throw std::runtime_error(cudaGetErrorString(err));
    }
}

void naive_atomic(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                  int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes) {
    launch(naive_atomic_kernel, data, output, params, groups_x, groups_y, group_size, shared_bytes);
}

void masked_atomic(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                   int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes) {
    launch(masked_atomic_kernel, data, output, params, groups_x, groups_y, group_size, shared_bytes);
}

void tree_basic(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes) {
    launch(tree_basic_kernel, data, output, params, groups_x, groups_y, group_size, shared_bytes);
}

void tree_precombine(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                     int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes) {
    launch(tree_precombine_kernel, data, output, params, groups_x, groups_y, group_size, shared_bytes);
}

void tree_interleaved(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                      int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes) {
    launch(tree_interleaved_kernel, data, output, params, groups_x, groups_y, group_size, shared_bytes);
}
"""

reduce_cpp_source = """
#include <torch/extension.h>

void naive_atomic(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                  int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes);
void masked_atomic(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                   int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes);
void tree_basic(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes);
void tree_precombine(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                     int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes);
void tree_interleaved(torch::Tensor data, torch::Tensor output, torch::Tensor params,
                      int64_t groups_x, int64_t groups_y, int64_t group_size, int64_t shared_bytes);
"""

ENTRY_POINTS = ["naive_atomic", "masked_atomic", "tree_basic", "tree_precombine", "tree_interleaved"]


class CudaDevice(Device):
    """
    GPU backend. Buffers are byte tensors on the device, kernels come from
    CUDA C compiled with torch's inline extension loader, and a fence is a
    CUDA event recorded on the current stream after the launches.
    """
    name = "cuda"

    def __init__(self, device_index: int = 0):
        if not torch.cuda.is_available():
            raise CapabilityError("no CUDA device is available")
        self.device = torch.device("cuda", device_index)
        props = torch.cuda.get_device_properties(self.device)
        limits = DeviceLimits(
            max_group_size=1024,
            max_shared_bytes=48 * 1024,
            max_groups_per_dim=65535,
            max_buffer_bytes=props.total_memory,
        )
        super().__init__(limits, ALL_FEATURES)
        self._tensors: dict[int, torch.Tensor] = {}
        self._modules: dict[str, object] = {}
        logger.info("using CUDA device %s (%s)", device_index, props.name)

    @property
    def default_source(self):
        return reduce_cuda_source

    def _allocate(self, handle: BufferHandle):
        self._tensors[handle.id] = torch.zeros(handle.size, dtype=torch.uint8, device=self.device)

    def _write(self, handle: BufferHandle, offset: int, data: bytes):
        host = torch.frombuffer(bytearray(data), dtype=torch.uint8)
        self._tensors[handle.id][offset:offset + len(data)].copy_(host)

    def _read(self, handle: BufferHandle, offset: int, length: int) -> bytes:
        return self._tensors[handle.id][offset:offset + length].cpu().numpy().tobytes()

    def _release(self, handle: BufferHandle):
        del self._tensors[handle.id]

    def _compile(self, source: str, entry_point: str):
        key = hashlib.sha1(source.encode()).hexdigest()[:12]
        module = self._modules.get(key)
        if module is None:
            from torch.utils.cpp_extension import load_inline
            try:
                module = load_inline(
                    name=f"reduce_cuda_{key}",
                    cpp_sources=reduce_cpp_source,
                    cuda_sources=source,
                    functions=ENTRY_POINTS,
                    verbose=logger.isEnabledFor(logging.DEBUG),
                )
            except (RuntimeError, OSError) as e:
                raise CapabilityError(f"could not compile reduction kernels: {e}") from e
            self._modules[key] = module
        try:
            return getattr(module, entry_point)
        except AttributeError as e:
            raise CapabilityError(f"kernel source has no entry point '{entry_point}'") from e

    def _submit(self, commands: list[DispatchCommand]):
        with torch.cuda.device(self.device):
            for command in commands:
                kernel = command.kernel
                kernel.program(
                    self._tensors[command.bind_group[INPUT_BINDING].id],
                    self._tensors[command.bind_group[OUTPUT_BINDING].id],
                    self._tensors[command.bind_group[PARAMS_BINDING].id],
                    command.groups_x,
                    command.groups_y,
                    kernel.group_size,
                    kernel.shared_bytes,
                )
            event = torch.cuda.Event()
            event.record()

        def wait():
            event.synchronize()
            return None

        return wait
