# description: box blur as a Triton kernel, one program per tile
# algorithm: masked loads give the zero padding, a masked store is the bounds check for edge tiles
import torch
import triton
import triton.language as tl

from boxblur import launch
from boxblur.errors import PreconditionViolation
from boxblur.task import TILE_DIM
from boxblur.utils import check_convolve_args, check_fill_args


@triton.jit
def convolve_kernel(
    src_ptr, kernel_ptr, dst_ptr, width, height,
    R: tl.constexpr,
    BLOCK_W: tl.constexpr, BLOCK_H: tl.constexpr,
):
    xs = tl.program_id(0) * BLOCK_W + tl.arange(0, BLOCK_W)
    ys = tl.program_id(1) * BLOCK_H + tl.arange(0, BLOCK_H)

    acc = tl.zeros((BLOCK_H, BLOCK_W), dtype=tl.float32)
    for l in tl.static_range(R):
        j = ys[:, None] + (l - R // 2)
        for k in tl.static_range(R):
            i = xs[None, :] + (k - R // 2)
            inside = (i >= 0) & (i < width) & (j >= 0) & (j < height)
            w = tl.load(kernel_ptr + k + l * R)
            acc += w * tl.load(src_ptr + i + j * width, mask=inside, other=0.0)

    active = (xs[None, :] < width) & (ys[:, None] < height)
    tl.store(dst_ptr + xs[None, :] + ys[:, None] * width, acc, mask=active)


@triton.jit
def fill_kernel(
    buf_ptr, value, width, height,
    BLOCK_W: tl.constexpr, BLOCK_H: tl.constexpr,
):
    xs = tl.program_id(0) * BLOCK_W + tl.arange(0, BLOCK_W)
    ys = tl.program_id(1) * BLOCK_H + tl.arange(0, BLOCK_H)
    vals = tl.zeros((BLOCK_H, BLOCK_W), dtype=tl.float32) + value
    active = (xs[None, :] < width) & (ys[:, None] < height)
    tl.store(buf_ptr + xs[None, :] + ys[:, None] * width, vals, mask=active)


def _check_tile(tile_width: int, tile_height: int):
    # tl.arange only takes power-of-two extents
    for side in (tile_width, tile_height):
        if side & (side - 1) != 0:
            raise PreconditionViolation(f"triton tiles must be powers of two, got {tile_width}x{tile_height}")


def convolve(src: torch.Tensor, kernel: torch.Tensor, width: int, height: int, r: int, dst: torch.Tensor,
             tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    check_convolve_args(src, kernel, width, height, r, dst)
    if not src.is_cuda:
        raise PreconditionViolation("triton backend needs tensors on a CUDA device")
    _check_tile(tile_width, tile_height)
    grid = launch.plan(width, height, tile_width, tile_height).grid

    with torch.cuda.device(src.device):
        convolve_kernel[grid](
            src, kernel, dst, width, height,
            R=r,
            BLOCK_W=tile_width, BLOCK_H=tile_height,
        )
    return dst


def fill(buffer: torch.Tensor, value: float, width: int, height: int,
         tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    check_fill_args(buffer, width, height)
    if not buffer.is_cuda:
        raise PreconditionViolation("triton backend needs tensors on a CUDA device")
    _check_tile(tile_width, tile_height)
    grid = launch.plan(width, height, tile_width, tile_height).grid

    with torch.cuda.device(buffer.device):
        fill_kernel[grid](
            buffer, value, width, height,
            BLOCK_W=tile_width, BLOCK_H=tile_height,
        )
    return buffer
