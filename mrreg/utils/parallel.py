"""
Thread-pool helpers for per-voxel loops.

Voxel ranges are split into fixed-size chunks that do not depend on the
number of threads, and results are always combined in chunk order, so
reductions give identical totals regardless of the thread count.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Any

import numpy as np


DEFAULT_CHUNK_SIZE = 65536


def get_number_of_threads(n_threads: Optional[int] = None) -> int:
    """Resolve the worker count (None = all available cores)."""
    if n_threads is None or n_threads < 1:
        return os.cpu_count() or 1
    return int(n_threads)


def chunk_slices(n_items: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[slice]:
    """Split range(n_items) into consecutive slices of at most chunk_size."""
    chunk_size = max(1, int(chunk_size))
    return [slice(start, min(start + chunk_size, n_items))
            for start in range(0, n_items, chunk_size)]


def chunked_map(func: Callable[[slice], Any],
                n_items: int,
                n_threads: Optional[int] = None,
                chunk_size: int = DEFAULT_CHUNK_SIZE,
                ) -> List[Any]:
    """
    Apply func to every chunk of range(n_items) on a worker pool.

    Args:
        func: Called with a slice, returns the chunk result
        n_items: Number of items (voxels)
        n_threads: Worker count (None = all cores)
        chunk_size: Items per chunk

    Returns:
        List of chunk results, in chunk order
    """
    slices = chunk_slices(n_items, chunk_size)
    n_threads = get_number_of_threads(n_threads)

    if n_threads == 1 or len(slices) <= 1:
        return [func(s) for s in slices]

    with ThreadPoolExecutor(max_workers=min(n_threads, len(slices))) as executor:
        futures = [executor.submit(func, s) for s in slices]
        return [future.result() for future in futures]


def chunked_concatenate(func: Callable[[slice], np.ndarray],
                        n_items: int,
                        n_threads: Optional[int] = None,
                        chunk_size: int = DEFAULT_CHUNK_SIZE,
                        ) -> np.ndarray:
    """Run func over chunks and concatenate the per-chunk arrays along axis 0."""
    results = chunked_map(func, n_items, n_threads, chunk_size)
    if not results:
        return np.zeros((0,))
    return np.concatenate(results, axis=0)


def chunked_sum(func: Callable[[slice], Any],
                n_items: int,
                n_threads: Optional[int] = None,
                chunk_size: int = DEFAULT_CHUNK_SIZE,
                ):
    """
    Run func over chunks and sum the results in chunk order.

    func may return a scalar, an array or a tuple of those; tuples are summed
    element-wise.
    """
    results = chunked_map(func, n_items, n_threads, chunk_size)
    if not results:
        return 0.0

    total = results[0]
    for result in results[1:]:
        if isinstance(total, tuple):
            total = tuple(a + b for a, b in zip(total, result))
        else:
            total = total + result
    return total
