import torch
import torch.nn.functional as F

from boxblur.device import allocate, fill_uniform
from boxblur.task import KERNEL_R, input_t, output_t
from boxblur.utils import get_device, make_match_reference


class DisableCuDNNTF32:
    def __init__(self):
        self.allow_tf32 = torch.backends.cudnn.allow_tf32
        self.deterministic = torch.backends.cudnn.deterministic

    def __enter__(self):
        torch.backends.cudnn.allow_tf32 = False
        torch.backends.cudnn.deterministic = True
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        torch.backends.cudnn.allow_tf32 = self.allow_tf32
        torch.backends.cudnn.deterministic = self.deterministic


def ref_kernel(data: input_t) -> output_t:
    """
    Reference implementation of the 3x3 box blur using PyTorch.
    Args:
        data: Tuple of (flat source image, width, height)
    Returns:
        Flat blurred image; borders are zero padded and not renormalized
    """
    src, width, height = data
    weights = torch.full((1, 1, KERNEL_R, KERNEL_R), 1.0 / (KERNEL_R * KERNEL_R),
                         device=src.device, dtype=torch.float32)
    with DisableCuDNNTF32():
        out = F.conv2d(
            src.reshape(1, 1, height, width),
            weights,
            stride=1,
            padding=KERNEL_R // 2
        )
    return out.reshape(-1)


def generate_input(width: int, height: int, seed: int, device: str = "") -> input_t:
    """
    Generates a random single-channel image.
    Returns:
        Tuple of (flat source image with values in [0, 1), width, height)
    """
    src = allocate(width * height, get_device(device))
    fill_uniform(src, seed)
    return (src, width, height)


check_implementation = make_match_reference(ref_kernel, rtol=1e-5, atol=1e-5)
