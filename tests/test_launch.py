"""
Unit tests for the work-group decomposition
"""

import pytest
import torch

from boxblur import launch
from boxblur.errors import PreconditionViolation


class TestPlan:
    """Grid sizes for exact and partial tiles"""

    def test_reference_configuration(self):
        grid = launch.plan(512 * 200, 512, 32, 32)
        assert grid.grid == (3200, 16)
        assert grid.block == (32, 32)

    def test_partial_tiles_round_up(self):
        grid = launch.plan(33, 33, 32, 32)
        assert grid.grid == (2, 2)
        assert grid.num_workers == 2 * 2 * 32 * 32

    def test_image_smaller_than_tile(self):
        assert launch.plan(4, 4, 32, 32).grid == (1, 1)

    def test_rectangular_tiles(self):
        assert launch.plan(100, 10, 16, 4).grid == (7, 3)

    @pytest.mark.parametrize("args", [(0, 4, 32, 32), (4, -1, 32, 32), (4, 4, 0, 32), (4, 4, 32, 0)])
    def test_rejects_empty_dimensions(self, args):
        with pytest.raises(PreconditionViolation):
            launch.plan(*args)


class TestWorkerCoords:
    """Thread-to-pixel mapping"""

    def test_shape_of_a_tile_row(self):
        grid = launch.plan(70, 40, 32, 32)
        xs, ys = grid.worker_coords(0)
        assert xs.shape == (32, 3 * 32)
        assert ys.shape == xs.shape

    def test_worker_owns_block_offset_plus_thread(self):
        grid = launch.plan(70, 40, 32, 32)
        xs, ys = grid.worker_coords(1)
        # thread (5, 2) of tile (2, 1)
        assert xs[2, 2 * 32 + 5].item() == 2 * 32 + 5
        assert ys[2, 2 * 32 + 5].item() == 1 * 32 + 2

    def test_tile_row_out_of_range(self):
        grid = launch.plan(70, 40, 32, 32)
        with pytest.raises(PreconditionViolation):
            grid.worker_coords(2)

    @pytest.mark.parametrize("width,height", [(64, 64), (33, 33), (1, 1), (100, 7), (31, 65)])
    def test_in_bounds_workers_cover_each_pixel_once(self, width, height):
        grid = launch.plan(width, height, 32, 32)
        indices = []
        for xs, ys in grid.tile_rows():
            active = grid.in_bounds(xs, ys)
            indices.append((xs + ys * width)[active])
        covered = torch.cat(indices).sort().values
        assert torch.equal(covered, torch.arange(width * height))

    def test_excess_workers_are_masked(self):
        grid = launch.plan(33, 33, 32, 32)
        active = sum(grid.in_bounds(xs, ys).sum().item() for xs, ys in grid.tile_rows())
        assert active == 33 * 33
        assert grid.num_workers - active == 4 * 1024 - 33 * 33
