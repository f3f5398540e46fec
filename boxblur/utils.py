import random
import sys

import numpy as np
import torch

from boxblur.errors import PreconditionViolation, ResourceFailure


def set_seed(seed=1234):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(seed)
        torch.cuda.manual_seed_all(seed)


def get_device(name: str = "") -> torch.device:
    """Resolve a device name, preferring the first GPU when none is given."""
    if name:
        try:
            device = torch.device(name)
        except RuntimeError as e:
            raise PreconditionViolation(f"invalid device '{name}': {e}") from None
        if device.type == "cuda" and not torch.cuda.is_available():
            raise ResourceFailure(f"device '{name}' requested but no CUDA device is available")
        return device
    if torch.cuda.is_available():
        return torch.device("cuda")
    print("No CUDA device found. Falling back to CPU.", file=sys.stderr)
    return torch.device("cpu")


def check_convolve_args(src: torch.Tensor, kernel: torch.Tensor, width: int, height: int, r: int,
                        dst: torch.Tensor):
    """
    Reject malformed launches before any worker runs.

    Raises:
    PreconditionViolation: on bad dimensions, sizes, dtypes, devices, or if `dst` shares storage with `src`.
    """
    if width <= 0 or height <= 0:
        raise PreconditionViolation(f"image must be non-empty, got {width}x{height}")
    if r <= 0 or r % 2 == 0:
        raise PreconditionViolation(f"kernel side must be odd and positive, got {r}")
    numel = width * height
    for name, tensor, expected in (("src", src, numel), ("dst", dst, numel), ("kernel", kernel, r * r)):
        if tensor.numel() != expected:
            raise PreconditionViolation(f"{name} has {tensor.numel()} elements, expected {expected}")
        if tensor.dtype != torch.float32:
            raise PreconditionViolation(f"{name} must be float32, got {tensor.dtype}")
        if not tensor.is_contiguous():
            raise PreconditionViolation(f"{name} must be contiguous")
        if tensor.device != src.device:
            raise PreconditionViolation(f"{name} is on {tensor.device}, src is on {src.device}")
    if src.untyped_storage().data_ptr() == dst.untyped_storage().data_ptr():
        raise PreconditionViolation("dst must not alias src")


def check_fill_args(buffer: torch.Tensor, width: int, height: int):
    if width <= 0 or height <= 0:
        raise PreconditionViolation(f"image must be non-empty, got {width}x{height}")
    if buffer.numel() != width * height:
        raise PreconditionViolation(f"buffer has {buffer.numel()} elements, expected {width * height}")
    if buffer.dtype != torch.float32 or not buffer.is_contiguous():
        raise PreconditionViolation("buffer must be a contiguous float32 tensor")


# Adapted from https://github.com/linkedin/Liger-Kernel/blob/main/test/utils.py
@torch.no_grad()
def verbose_allclose(
        received: torch.Tensor,
        expected: torch.Tensor,
        width: int,
        rtol=1e-05,
        atol=1e-08,
        max_print=5
) -> list[str]:
    """
    Compare two flat images element-wise within a tolerance, describing mismatches by pixel coordinate.

    Parameters:
    received (torch.Tensor): Image we actually got.
    expected (torch.Tensor): Image we expected to receive.
    width (int): Row length, used to turn linear indices back into (x, y).
    rtol (float): Relative tolerance; relative to expected
    atol (float): Absolute tolerance.
    max_print (int): Maximum number of mismatched pixels to describe.

    Returns:
    An empty list if the images match, otherwise human-readable mismatch details.
    """
    if received.shape != expected.shape:
        return [f"SIZE MISMATCH: got {tuple(received.shape)}, expected {tuple(expected.shape)}"]

    received = received.reshape(-1)
    expected = expected.reshape(-1)

    tolerance = atol + rtol * torch.abs(expected)
    tol_mismatched = torch.abs(received - expected) > tolerance

    # nan compares unequal to everything, so track it separately
    nan_mismatched = torch.logical_xor(torch.isnan(received), torch.isnan(expected))
    inf_mismatched = torch.logical_or(
        torch.logical_xor(torch.isposinf(received), torch.isposinf(expected)),
        torch.logical_xor(torch.isneginf(received), torch.isneginf(expected)),
    )
    mismatched = tol_mismatched | nan_mismatched | inf_mismatched

    num_mismatched = mismatched.count_nonzero().item()
    if num_mismatched == 0:
        return []

    details = [f"Number of mismatched pixels: {num_mismatched}"]
    for index in torch.nonzero(mismatched).flatten()[:max_print].tolist():
        x, y = index % width, index // width
        details.append(f"ERROR AT ({x}, {y}): {received[index].item()} {expected[index].item()}")
    if num_mismatched > max_print:
        details.append(f"... and {num_mismatched - max_print} more mismatched pixels.")
    return details


def match_reference(data, output, reference: callable, rtol=1e-05, atol=1e-08):
    """
    Convenient "default" implementation for the harness's `check_implementation` function.
    """
    _, width, _ = data
    expected = reference(data)
    reasons = verbose_allclose(output, expected, width, rtol=rtol, atol=atol)

    if len(reasons) > 0:
        return "mismatch found! custom implementation doesn't match reference: " + " ".join(reasons)

    return ''


def make_match_reference(reference: callable, **kwargs):
    def wrapped(data, output):
        return match_reference(data, output, reference=reference, **kwargs)
    return wrapped
