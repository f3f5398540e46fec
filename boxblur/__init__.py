"""3x3 box blur on the GPU with a PyTorch reference and timing harness."""

__version__ = "0.1.0"
