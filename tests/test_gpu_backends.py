"""
Tests for the Triton and CUDA kernels; skipped without a GPU
"""

import pytest
import torch

from boxblur.device import Stopwatch, fill_uniform, free
from boxblur.reference import check_implementation, generate_input, ref_kernel
from boxblur.submission import blur, fill

requires_cuda = pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")


def _has_nvcc():
    from torch.utils.cpp_extension import CUDA_HOME
    return CUDA_HOME is not None


GPU_BACKENDS = [
    "triton",
    pytest.param("cuda", marks=pytest.mark.skipif(not _has_nvcc(), reason="nvcc not available")),
]


@requires_cuda
@pytest.mark.parametrize("backend", GPU_BACKENDS)
class TestGpuBackends:

    @pytest.mark.parametrize("width,height", [(4, 4), (33, 33), (1000, 77), (512 * 4, 512)])
    def test_matches_reference(self, backend, width, height):
        data = generate_input(width, height, seed=1234, device="cuda")
        output = blur(*data, backend=backend)
        torch.cuda.synchronize()
        assert check_implementation(data, output) == ''

    def test_ramp_center(self, backend):
        src = torch.arange(16, dtype=torch.float32, device="cuda")
        out = blur(src, 4, 4, backend=backend)
        assert out[1 + 1 * 4].item() == pytest.approx(5.0, rel=1e-5)

    def test_corner_of_ones(self, backend):
        out = blur(torch.ones(64 * 64, device="cuda"), 64, 64, backend=backend)
        assert out[0].item() == pytest.approx(4 / 9, rel=1e-5)
        assert out[10 + 10 * 64].item() == pytest.approx(1.0, rel=1e-5)

    def test_no_write_past_the_image(self, backend):
        width, height = 33, 33
        src, _, _ = generate_input(width, height, seed=5, device="cuda")
        backing = torch.full((width * height + 4096,), -7.0, device="cuda")
        dst = backing[:width * height]

        blur(src, width, height, dst=dst, backend=backend)
        torch.cuda.synchronize()

        assert torch.all(backing[width * height:] == -7.0).item()
        torch.testing.assert_close(dst, ref_kernel((src, width, height)), rtol=1e-5, atol=1e-5)

    @pytest.mark.skipif(torch.cuda.device_count() < 2, reason="needs two GPUs")
    def test_runs_on_the_buffers_device(self, backend):
        data = generate_input(70, 40, seed=9, device="cuda:1")
        assert torch.cuda.current_device() == 0
        output = blur(*data, backend=backend)
        torch.cuda.synchronize(data[0].device)
        assert output.device == torch.device("cuda:1")
        assert check_implementation(data, output) == ''

        buffer = torch.empty(70 * 40, device="cuda:1")
        fill(buffer, 0.5, 70, 40, backend=backend)
        assert torch.all(buffer == 0.5).item()

    def test_fill(self, backend):
        backing = torch.full((70 * 40 + 64,), -1.0, device="cuda")
        fill(backing[:70 * 40], 0.25, 70, 40, backend=backend)
        assert torch.all(backing[:70 * 40] == 0.25).item()
        assert torch.all(backing[70 * 40:] == -1.0).item()


@requires_cuda
class TestGpuServices:

    def test_random_source_is_deterministic(self):
        a = fill_uniform(torch.empty(1 << 16, device="cuda"), 1234)
        b = fill_uniform(torch.empty(1 << 16, device="cuda"), 1234)
        assert torch.equal(a, b)

    def test_event_stopwatch(self):
        src = torch.rand(512 * 512, device="cuda")
        watch = Stopwatch(torch.device("cuda"))
        watch.start()
        blur(src, 512, 512, backend="triton")
        watch.stop()
        assert watch.elapsed_millis() >= 0.0

    @pytest.mark.skipif(torch.cuda.device_count() < 2, reason="needs two GPUs")
    def test_event_stopwatch_on_second_device(self):
        src = torch.rand(512 * 512, device="cuda:1")
        watch = Stopwatch(torch.device("cuda:1"))
        watch.start()
        blur(src, 512, 512, backend="triton")
        watch.stop()
        assert watch.elapsed_millis() >= 0.0

    def test_free_releases_device_memory(self):
        buf = torch.empty(1 << 20, device="cuda")
        free(buf)
        assert buf.untyped_storage().nbytes() == 0
