"""
Unit tests for the host/device services and error types
"""

import os

import pytest
import torch

from boxblur import device
from boxblur.errors import Failure, PreconditionViolation, ResourceFailure
from boxblur.utils import get_device

CPU = torch.device("cpu")


class TestRandomSource:
    """Seeded uniform fill"""

    def test_same_seed_is_bit_identical(self):
        a = device.fill_uniform(torch.empty(4096), 1234)
        b = device.fill_uniform(torch.empty(4096), 1234)
        assert torch.equal(a, b)

    def test_different_seed_differs(self):
        a = device.fill_uniform(torch.empty(4096), 1234)
        b = device.fill_uniform(torch.empty(4096), 1235)
        assert not torch.equal(a, b)

    def test_samples_in_unit_interval(self):
        buf = device.fill_uniform(torch.empty(10000), 1)
        assert buf.min().item() >= 0.0
        assert buf.max().item() < 1.0


class TestMemory:
    """Allocation and transfers"""

    def test_allocate(self):
        buf = device.allocate(12, CPU)
        assert buf.shape == (12,)
        assert buf.dtype == torch.float32

    def test_allocate_nothing(self):
        with pytest.raises(PreconditionViolation):
            device.allocate(0, CPU)

    def test_allocation_failure_is_a_resource_failure(self, monkeypatch):
        def broken_empty(*args, **kwargs):
            raise RuntimeError("device lost")

        monkeypatch.setattr(device.torch, "empty", broken_empty)
        with pytest.raises(ResourceFailure) as exc_info:
            device.allocate(16, CPU)

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert "device lost" in str(exc_info.value)

    def test_round_trip(self):
        host = torch.arange(6, dtype=torch.float32)
        assert torch.equal(device.to_host(device.to_device(host, CPU)), host)

    def test_free_releases_the_buffer(self):
        buf = device.allocate(64, CPU)
        device.free(buf)
        assert buf.untyped_storage().nbytes() == 0

    def test_host_copy_survives_free(self):
        buf = device.fill_uniform(device.allocate(64, CPU), 3)
        host = device.to_host(buf)
        expected = host.clone()
        device.free(buf)
        assert torch.equal(host, expected)

    def test_invalid_device_name(self):
        with pytest.raises(PreconditionViolation, match="invalid device 'gpu'"):
            get_device("gpu")

    @pytest.mark.skipif(torch.cuda.is_available(), reason="needs a machine without CUDA")
    def test_missing_gpu_is_a_resource_failure(self):
        with pytest.raises(ResourceFailure, match="no CUDA device"):
            get_device("cuda")


class TestStopwatch:
    """Host-clock stopwatch"""

    def test_elapsed_is_non_negative(self):
        watch = device.Stopwatch(CPU)
        watch.start()
        torch.ones(1000).sum()
        watch.stop()
        assert watch.elapsed_millis() >= 0.0

    def test_elapsed_before_stop(self):
        watch = device.Stopwatch(CPU)
        watch.start()
        with pytest.raises(RuntimeError):
            watch.elapsed_millis()

    def test_stop_before_start(self):
        with pytest.raises(RuntimeError):
            device.Stopwatch(CPU).stop()


class TestErrors:
    """Failure context"""

    def test_resource_failure_records_call_site(self):
        error = ResourceFailure("allocation failed", ValueError("too big"))
        assert os.path.basename(error.filename) == "test_device.py"
        assert error.lineno > 0
        assert "ValueError: too big" in str(error)

    def test_failure_from_exception(self):
        failure = Failure.from_exception(ResourceFailure("transfer failed", RuntimeError("bus error")))
        assert failure.kind == "transfer failed"
        assert "test_device.py:" in failure.where
        assert failure.cause == "RuntimeError: bus error"
        assert "transfer failed at" in str(failure)

    def test_precondition_violation_is_a_value_error(self):
        assert issubclass(PreconditionViolation, ValueError)
        assert issubclass(ResourceFailure, RuntimeError)
