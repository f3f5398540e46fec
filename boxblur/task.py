import dataclasses
import os
from typing import Tuple, TypedDict, TypeVar

import torch

from boxblur.errors import PreconditionViolation

input_t = TypeVar("input_t", bound=Tuple[torch.Tensor, int, int])  # (flat source image, width, height)
output_t = TypeVar("output_t", bound=torch.Tensor)  # flat blurred image, same size as the source

WIDTH = 512 * 200
HEIGHT = 512
TILE_DIM = 32
KERNEL_R = 3
SEED = 1234

BACKENDS = ("auto", "torch", "triton", "cuda")


class TestSpec(TypedDict):
    width: int
    height: int
    seed: int


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise PreconditionViolation(f"{name} must be an integer, got '{raw}'") from None


@dataclasses.dataclass(frozen=True)
class BlurConfig:
    """
    Run configuration, built once at startup and passed down explicitly.
    """
    width: int = WIDTH
    height: int = HEIGHT
    tile_width: int = TILE_DIM
    tile_height: int = TILE_DIM
    seed: int = SEED
    backend: str = "auto"
    device: str = ""  # empty: first GPU if any, else CPU
    dump_full: bool = False

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise PreconditionViolation(f"image must be non-empty, got {self.width}x{self.height}")
        if self.tile_width <= 0 or self.tile_height <= 0:
            raise PreconditionViolation(f"tile must be non-empty, got {self.tile_width}x{self.tile_height}")
        if self.backend not in BACKENDS:
            raise PreconditionViolation(f"unknown backend '{self.backend}', expected one of {', '.join(BACKENDS)}")
        if self.device:
            try:
                torch.device(self.device)
            except RuntimeError as e:
                raise PreconditionViolation(f"invalid device '{self.device}': {e}") from None

    @classmethod
    def from_env(cls) -> "BlurConfig":
        return cls(
            width=_env_int("BOXBLUR_WIDTH", WIDTH),
            height=_env_int("BOXBLUR_HEIGHT", HEIGHT),
            seed=_env_int("BOXBLUR_SEED", SEED),
            backend=os.getenv("BOXBLUR_BACKEND") or "auto",
            device=os.getenv("BOXBLUR_DEVICE") or "",
            dump_full=os.getenv("BOXBLUR_DUMP_FULL", "").lower() in ("1", "true", "yes"),
        )

    @property
    def numel(self) -> int:
        return self.width * self.height
