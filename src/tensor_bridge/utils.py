"""Runtime capability probes."""

from __future__ import annotations

import functools
import os
from typing import Optional

import numpy as np

from .device import cuda_is_available


def _affinity_size() -> Optional[int]:
    try:
        affinity = os.sched_getaffinity(0)
    except (AttributeError, OSError):
        return None
    if not affinity:
        return None
    return len(affinity)


def get_num_threads() -> int:
    """Number of CPUs this process may run on."""

    affinity = _affinity_size()
    if affinity is not None:
        return affinity
    return os.cpu_count() or 1


@functools.lru_cache(maxsize=None)
def blas_vendor() -> str:
    """Lower-cased name of the BLAS numpy was built against, or ``""``."""

    try:
        config = np.show_config(mode="dicts")
    except TypeError:  # numpy < 1.25 only prints its configuration
        return ""
    blas = config.get("Build Dependencies", {}).get("blas", {})
    return str(blas.get("name", "")).lower()


def has_mkl() -> bool:
    return "mkl" in blas_vendor()


def has_accelerate() -> bool:
    vendor = blas_vendor()
    return "accelerate" in vendor or "veclib" in vendor


__all__ = [
    "blas_vendor",
    "cuda_is_available",
    "get_num_threads",
    "has_accelerate",
    "has_mkl",
]
