from __future__ import annotations

from .metrics import compute_batch_fraction, compute_fraction, compute_runtime_s, compute_throughput

__all__ = [
    "compute_batch_fraction",
    "compute_fraction",
    "compute_runtime_s",
    "compute_throughput",
]
