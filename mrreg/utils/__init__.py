"""Shared utilities."""

from mrreg.utils.parallel import (
    get_number_of_threads,
    chunk_slices,
    chunked_map,
    chunked_concatenate,
    chunked_sum,
)

__all__ = [
    'get_number_of_threads',
    'chunk_slices',
    'chunked_map',
    'chunked_concatenate',
    'chunked_sum',
]
