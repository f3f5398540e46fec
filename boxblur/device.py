"""
Host/device services used by the harness: buffer management, the seeded
random source, and the stopwatch. Device errors from torch are rethrown as
`ResourceFailure` so the harness can report them with their call site.
"""
import time

import torch

from boxblur.errors import PreconditionViolation, ResourceFailure


def allocate(numel: int, device: torch.device) -> torch.Tensor:
    if numel <= 0:
        raise PreconditionViolation(f"cannot allocate {numel} elements")
    try:
        return torch.empty(numel, dtype=torch.float32, device=device)
    except torch.cuda.OutOfMemoryError as e:
        raise ResourceFailure(f"out of memory allocating {numel * 4} bytes on {device}", e) from e
    except RuntimeError as e:
        raise ResourceFailure(f"allocation of {numel * 4} bytes on {device} failed", e) from e


def to_device(tensor: torch.Tensor, device: torch.device) -> torch.Tensor:
    try:
        return tensor.to(device).contiguous()
    except RuntimeError as e:
        raise ResourceFailure(f"host to device copy of {tensor.numel() * tensor.element_size()} bytes failed", e) from e


def to_host(tensor: torch.Tensor) -> torch.Tensor:
    """Copy to host memory; always a new buffer, even for a tensor already on the CPU."""
    try:
        return tensor.to("cpu", copy=True)
    except RuntimeError as e:
        raise ResourceFailure(f"device to host copy of {tensor.numel() * tensor.element_size()} bytes failed", e) from e


def free(tensor: torch.Tensor):
    """
    Release the memory behind `tensor`. Every view of the same storage becomes
    empty, so the buffer must not be used afterwards.
    """
    if tensor.is_cuda:
        with torch.cuda.device(tensor.device):
            torch.cuda.synchronize()
            tensor.untyped_storage().resize_(0)
            torch.cuda.empty_cache()
    else:
        tensor.untyped_storage().resize_(0)


def fill_uniform(buffer: torch.Tensor, seed: int) -> torch.Tensor:
    """Fill `buffer` in place with uniform samples in [0, 1); identical seeds give identical buffers."""
    try:
        gen = torch.Generator(device=buffer.device)
        gen.manual_seed(seed)
        buffer.uniform_(0, 1, generator=gen)
    except RuntimeError as e:
        raise ResourceFailure(f"random source on {buffer.device} failed", e) from e
    return buffer


class Stopwatch:
    """
    Measures one bracketed interval on a device.

    On CUDA the interval is recorded with events on the current stream of the
    stopwatch's device and `stop` waits for the end event, so queued kernels are
    included. Elsewhere it reads the host clock.
    """

    def __init__(self, device: torch.device):
        self.device = torch.device(device)
        self._elapsed_ms = None
        if self.device.type == "cuda":
            self._start_event = torch.cuda.Event(enable_timing=True)
            self._end_event = torch.cuda.Event(enable_timing=True)
        self._start_ns = None

    def start(self):
        self._elapsed_ms = None
        if self.device.type == "cuda":
            self._start_event.record(torch.cuda.current_stream(self.device))
        else:
            self._start_ns = time.perf_counter_ns()

    def stop(self):
        if self.device.type == "cuda":
            self._end_event.record(torch.cuda.current_stream(self.device))
            self._end_event.synchronize()
            self._elapsed_ms = self._start_event.elapsed_time(self._end_event)
        else:
            if self._start_ns is None:
                raise RuntimeError("stopwatch stopped before it was started")
            self._elapsed_ms = (time.perf_counter_ns() - self._start_ns) / 1e6
        self._elapsed_ms = max(self._elapsed_ms, 0.0)

    def elapsed_millis(self) -> float:
        if self._elapsed_ms is None:
            raise RuntimeError("stopwatch has not been stopped")
        return self._elapsed_ms
