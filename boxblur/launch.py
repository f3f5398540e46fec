"""
Decomposition of a 2D image into fixed-size work groups.

Every backend launches the same grid: `tiles_x * tiles_y` tiles of
`tile_width * tile_height` workers, worker (tx, ty) of tile (bx, by) owning
global pixel (bx * tile_width + tx, by * tile_height + ty). Tiles on the right
and bottom edges may hang past the image; their excess workers are masked out
by `in_bounds` and never write.
"""
import dataclasses
from typing import Iterator, Tuple

import torch

from boxblur.errors import PreconditionViolation


def cdiv(a: int, b: int) -> int:
    return (a + b - 1) // b


@dataclasses.dataclass(frozen=True)
class LaunchPlan:
    width: int
    height: int
    tile_width: int
    tile_height: int
    tiles_x: int
    tiles_y: int

    @property
    def grid(self) -> Tuple[int, int]:
        return (self.tiles_x, self.tiles_y)

    @property
    def block(self) -> Tuple[int, int]:
        return (self.tile_width, self.tile_height)

    @property
    def num_workers(self) -> int:
        return self.tiles_x * self.tiles_y * self.tile_width * self.tile_height

    def worker_coords(self, tile_row: int, device=None) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Global (x, y) of every worker in one row of tiles.

        Returns two int64 tensors of shape (tile_height, tiles_x * tile_width); column
        `bx * tile_width + tx` belongs to worker tx of tile bx.
        """
        if not 0 <= tile_row < self.tiles_y:
            raise PreconditionViolation(f"tile row {tile_row} outside grid of {self.tiles_y} rows")
        block_x = torch.arange(self.tiles_x, device=device).repeat_interleave(self.tile_width)
        thread_x = torch.arange(self.tile_width, device=device).repeat(self.tiles_x)
        xs = block_x * self.tile_width + thread_x
        ys = tile_row * self.tile_height + torch.arange(self.tile_height, device=device)
        grid_y, grid_x = torch.meshgrid(ys, xs, indexing="ij")
        return grid_x, grid_y

    def tile_rows(self, device=None) -> Iterator[Tuple[torch.Tensor, torch.Tensor]]:
        for tile_row in range(self.tiles_y):
            yield self.worker_coords(tile_row, device=device)

    def in_bounds(self, xs: torch.Tensor, ys: torch.Tensor) -> torch.Tensor:
        return (xs < self.width) & (ys < self.height)


def plan(width: int, height: int, tile_width: int, tile_height: int) -> LaunchPlan:
    if width <= 0 or height <= 0:
        raise PreconditionViolation(f"image must be non-empty, got {width}x{height}")
    if tile_width <= 0 or tile_height <= 0:
        raise PreconditionViolation(f"tile must be non-empty, got {tile_width}x{tile_height}")
    return LaunchPlan(
        width=width,
        height=height,
        tile_width=tile_width,
        tile_height=tile_height,
        tiles_x=cdiv(width, tile_width),
        tiles_y=cdiv(height, tile_height),
    )
