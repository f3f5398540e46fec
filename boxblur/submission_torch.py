# description: box blur as a SIMT emulation in plain PyTorch, runs on any device
# algorithm: one row of tiles per step; every worker of the row gathers its r*r neighborhood with zero padding,
#            then only workers inside the image scatter their sum into dst
import torch

from boxblur import launch
from boxblur.task import TILE_DIM
from boxblur.utils import check_convolve_args, check_fill_args


def convolve(src: torch.Tensor, kernel: torch.Tensor, width: int, height: int, r: int, dst: torch.Tensor,
             tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    check_convolve_args(src, kernel, width, height, r, dst)
    grid = launch.plan(width, height, tile_width, tile_height)
    r_half = r // 2
    # broadcast constant, read by every worker
    weights = kernel.tolist()

    for xs, ys in grid.tile_rows(device=src.device):
        acc = torch.zeros(xs.shape, dtype=torch.float32, device=src.device)
        for l in range(r):
            j = ys - r_half + l
            for k in range(r):
                i = xs - r_half + k
                outside = (i < 0) | (i >= width) | (j < 0) | (j >= height)
                neighbor = src[(i + j * width).masked_fill(outside, 0)]
                acc += weights[k + l * r] * neighbor.masked_fill(outside, 0.0)

        active = grid.in_bounds(xs, ys)
        dst[(xs + ys * width)[active]] = acc[active]
    return dst


def fill(buffer: torch.Tensor, value: float, width: int, height: int,
         tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    check_fill_args(buffer, width, height)
    grid = launch.plan(width, height, tile_width, tile_height)
    for xs, ys in grid.tile_rows(device=buffer.device):
        active = grid.in_bounds(xs, ys)
        buffer[(xs + ys * width)[active]] = value
    return buffer
