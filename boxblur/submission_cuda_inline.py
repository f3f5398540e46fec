# description: box blur as a hand-written CUDA kernel compiled with load_inline
# algorithm: one thread per output pixel, dim3(32, 32) blocks; each block stages the r*r weights
#            into shared memory once, then every thread in the image accumulates its neighborhood
import functools

import torch
from torch.utils.cpp_extension import load_inline

from boxblur import launch
from boxblur.errors import PreconditionViolation
from boxblur.task import TILE_DIM
from boxblur.utils import check_convolve_args, check_fill_args

MAX_KERNEL_R = 7
MAX_THREADS_PER_BLOCK = 1024

blur_cuda_source = """
#define MAX_KERNEL_R 7

__global__ void convolve_kernel(const float* __restrict__ src,
                                const float* __restrict__ kernel,
                                float* __restrict__ dst,
                                int width,
                                int height,
                                int r) {
    __shared__ float kernel_s[MAX_KERNEL_R * MAX_KERNEL_R];

    int num_threads = blockDim.x * blockDim.y;
    int tid = threadIdx.y * blockDim.x + threadIdx.x;
    for (int i = tid; i < r * r; i += num_threads) {
        kernel_s[i] = kernel[i];
    }
    __syncthreads();

    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) {
        return;
    }

    int r_half = r / 2;
    float sum = 0.0f;
    for (int l = 0; l < r; ++l) {
        int j = y - r_half + l;
        for (int k = 0; k < r; ++k) {
            int i = x - r_half + k;
            if (i >= 0 && i < width && j >= 0 && j < height) {
                sum += kernel_s[k + l * r] * src[i + j * width];
            }
        }
    }
    dst[x + y * width] = sum;
}

__global__ void fill_kernel(float* __restrict__ buf, float value, int width, int height) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x < width && y < height) {
        buf[x + y * width] = value;
    }
}

torch::Tensor convolve_cuda(torch::Tensor src, torch::Tensor kernel, torch::Tensor dst,
                            int64_t width, int64_t height, int64_t r,
                            int64_t grid_x, int64_t grid_y, int64_t block_x, int64_t block_y) {
    TORCH_CHECK(src.device().is_cuda(), "src must be a CUDA tensor");
    TORCH_CHECK(kernel.device().is_cuda(), "kernel must be a CUDA tensor");
    TORCH_CHECK(dst.device().is_cuda(), "dst must be a CUDA tensor");
    TORCH_CHECK(r <= MAX_KERNEL_R, "Kernel size exceeds MAX_KERNEL_R");

    dim3 threads(block_x, block_y, 1);
    dim3 blocks(grid_x, grid_y, 1);

    convolve_kernel<<<blocks, threads>>>(
        src.data_ptr<float>(),
        kernel.data_ptr<float>(),
        dst.data_ptr<float>(),
        width,
        height,
        r
    );

    cudaError_t err = cudaGetLastError();
    if (err != cudaSuccess) {
        throw std::runtime_error(cudaGetErrorString(err));
    }

    return dst;
}

torch::Tensor fill_cuda(torch::Tensor buf, double value, int64_t width, int64_t height,
                        int64_t grid_x, int64_t grid_y, int64_t block_x, int64_t block_y) {
    TORCH_CHECK(buf.device().is_cuda(), "buf must be a CUDA tensor");

    dim3 threads(block_x, block_y, 1);
    dim3 blocks(grid_x, grid_y, 1);

    fill_kernel<<<blocks, threads>>>(buf.data_ptr<float>(), static_cast<float>(value), width, height);

    cudaError_t err = cudaGetLastError();
    if (err != cudaSuccess) {
        throw std::runtime_error(cudaGetErrorString(err));
    }

    return buf;
}
"""

blur_cpp_source = """
#include <torch/extension.h>

torch::Tensor convolve_cuda(torch::Tensor src, torch::Tensor kernel, torch::Tensor dst,
                            int64_t width, int64_t height, int64_t r,
                            int64_t grid_x, int64_t grid_y, int64_t block_x, int64_t block_y);
torch::Tensor fill_cuda(torch::Tensor buf, double value, int64_t width, int64_t height,
                        int64_t grid_x, int64_t grid_y, int64_t block_x, int64_t block_y);
"""


@functools.lru_cache(maxsize=None)
def blur_module():
    return load_inline(
        name='boxblur_cuda',
        cpp_sources=blur_cpp_source,
        cuda_sources=blur_cuda_source,
        functions=['convolve_cuda', 'fill_cuda'],
        verbose=False,
    )


def _launch_plan(tensor: torch.Tensor, width: int, height: int, tile_width: int, tile_height: int):
    if not tensor.is_cuda:
        raise PreconditionViolation("cuda backend needs tensors on a CUDA device")
    if tile_width * tile_height > MAX_THREADS_PER_BLOCK:
        raise PreconditionViolation(f"{tile_width}x{tile_height} tiles exceed {MAX_THREADS_PER_BLOCK} threads per block")
    return launch.plan(width, height, tile_width, tile_height)


def convolve(src: torch.Tensor, kernel: torch.Tensor, width: int, height: int, r: int, dst: torch.Tensor,
             tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    check_convolve_args(src, kernel, width, height, r, dst)
    if r > MAX_KERNEL_R:
        raise PreconditionViolation(f"kernel side {r} exceeds {MAX_KERNEL_R}")
    grid = _launch_plan(src, width, height, tile_width, tile_height)
    module = blur_module()
    with torch.cuda.device(src.device):
        return module.convolve_cuda(src, kernel, dst, width, height, r, *grid.grid, *grid.block)


def fill(buffer: torch.Tensor, value: float, width: int, height: int,
         tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    check_fill_args(buffer, width, height)
    grid = _launch_plan(buffer, width, height, tile_width, tile_height)
    module = blur_module()
    with torch.cuda.device(buffer.device):
        return module.fill_cuda(buffer, value, width, height, *grid.grid, *grid.block)
