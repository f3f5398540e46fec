# description: 3x3 box blur entry point; builds the uniform weights and hands them to a backend
# backends: torch (SIMT emulation, any device), triton, cuda (load_inline)
import importlib

import torch

from boxblur.errors import PreconditionViolation
from boxblur.task import BACKENDS, KERNEL_R, TILE_DIM, input_t, output_t

# exact 1/9, rounded once to float32
BLUR_WEIGHT = 1.0 / (KERNEL_R * KERNEL_R)

_BACKEND_MODULES = {
    "torch": "boxblur.submission_torch",
    "triton": "boxblur.submission_triton",
    "cuda": "boxblur.submission_cuda_inline",
}


def resolve_backend(name: str, device: torch.device) -> str:
    if name not in BACKENDS:
        raise PreconditionViolation(f"unknown backend '{name}', expected one of {', '.join(BACKENDS)}")
    if name == "auto":
        return "triton" if device.type == "cuda" else "torch"
    if name != "torch" and device.type != "cuda":
        raise PreconditionViolation(f"{name} backend needs a CUDA device, got {device}")
    return name


def get_backend(name: str, device: torch.device):
    # triton and the cuda extension are only imported once selected
    return importlib.import_module(_BACKEND_MODULES[resolve_backend(name, device)])


def uniform_weights(device: torch.device) -> torch.Tensor:
    return torch.full((KERNEL_R * KERNEL_R,), BLUR_WEIGHT, dtype=torch.float32, device=device)


def blur(src: torch.Tensor, width: int, height: int, dst: torch.Tensor = None, backend: str = "auto",
         tile_width: int = TILE_DIM, tile_height: int = TILE_DIM) -> torch.Tensor:
    """
    Blur a flat width x height image with the uniform 3x3 kernel.

    Border pixels see zero padding and are not renormalized, so a constant image
    comes out darker along its edges.
    Args:
        src: flat float32 image
        dst: optional destination of the same size; allocated when omitted
        backend: one of "auto", "torch", "triton", "cuda"
    Returns:
        dst
    """
    module = get_backend(backend, src.device)
    if dst is None:
        dst = torch.empty_like(src)
    return module.convolve(src, uniform_weights(src.device), width, height, KERNEL_R, dst,
                           tile_width=tile_width, tile_height=tile_height)


def fill(buffer: torch.Tensor, value: float, width: int, height: int, backend: str = "auto") -> torch.Tensor:
    return get_backend(backend, buffer.device).fill(buffer, value, width, height)


def custom_kernel(data: input_t, backend: str = "auto") -> output_t:
    src, width, height = data
    return blur(src, width, height, backend=backend)
