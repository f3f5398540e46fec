from pathlib import Path

import pytest
import torch

CASES_DIR = Path(__file__).resolve().parent.parent / "cases"


@pytest.fixture
def cases_dir():
    return CASES_DIR


@pytest.fixture
def ramp():
    """Flat width x height image with src[x, y] = x + y * width."""
    def make(width, height, device="cpu"):
        return torch.arange(width * height, dtype=torch.float32, device=device)
    return make


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("BOXBLUR_FD", "BOXBLUR_WIDTH", "BOXBLUR_HEIGHT", "BOXBLUR_SEED",
                 "BOXBLUR_BACKEND", "BOXBLUR_DEVICE", "BOXBLUR_DUMP_FULL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
