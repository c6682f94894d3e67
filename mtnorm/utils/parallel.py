"""Thread based helpers for voxel-wise passes over 3D/4D arrays.

Every helper splits the first axis of its arrays into disjoint slabs and hands
one slab to each task. Tasks never share mutable state: per-voxel results are
written to disjoint slices of the output and reductions return one partial per
slab, combined sequentially once all tasks are done.
"""

from concurrent.futures import ThreadPoolExecutor
import os

import numpy as np


def determine_num_threads(num_threads):
    """Determine the effective number of threads to be used.

    Parameters
    ----------
    num_threads : int or None
        Desired number of threads. If None or 0, all available cores are
        used. A negative value ``-n`` means "all cores except ``n - 1``",
        e.g. -1 uses all cores and -2 leaves one core free.

    Returns
    -------
    num_threads : int
        Number of threads, at least 1.
    """
    if num_threads is not None and not isinstance(num_threads, (int, np.integer)):
        raise TypeError("num_threads must be an int or None")

    cpu_count = os.cpu_count() or 1
    if num_threads is None or num_threads == 0:
        return cpu_count
    if num_threads < 0:
        return max(1, cpu_count + 1 + int(num_threads))
    return int(num_threads)


def _slabs(n, n_chunks):
    """Split ``range(n)`` into at most ``n_chunks`` contiguous slices."""
    n_chunks = max(1, min(n, n_chunks))
    bounds = np.linspace(0, n, n_chunks + 1).astype(int)
    return [slice(lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]


def paramap(func, items, *, num_threads=None):
    """Apply ``func`` to every item using a thread pool.

    Parameters
    ----------
    func : callable
        Function of one argument.
    items : iterable
        Arguments passed to ``func``.
    num_threads : int, optional
        See :func:`determine_num_threads`.

    Returns
    -------
    results : list
        ``func(item)`` for every item, in input order.
    """
    items = list(items)
    num_threads = min(determine_num_threads(num_threads), max(len(items), 1))
    if num_threads == 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        return list(executor.map(func, items))


def parallel_for_each(func, *arrays, out, num_threads=None):
    """Run a per-voxel function over same-shaped arrays, slab by slab.

    Parameters
    ----------
    func : callable
        Called as ``func(slab, *views)`` where ``slab`` is the slice along the
        first axis and ``views`` are ``array[slab]`` for each input array. It
        must return the values for ``out[slab]`` and must not modify its
        inputs.
    *arrays : ndarray
        Read-only inputs sharing the size of their first axis with ``out``.
    out : ndarray
        Output array, filled in place.
    num_threads : int, optional
        See :func:`determine_num_threads`.

    Returns
    -------
    out : ndarray
    """
    n = out.shape[0]
    for arr in arrays:
        if arr.shape[0] != n:
            raise ValueError(
                f"All arrays must share their first dimension ({arr.shape[0]} != {n})"
            )

    def _run(slab):
        out[slab] = func(slab, *(arr[slab] for arr in arrays))

    paramap(_run, _slabs(n, determine_num_threads(num_threads)), num_threads=num_threads)
    return out


def parallel_reduce(func, *arrays, combine=np.add, initial=0, num_threads=None):
    """Reduce same-shaped arrays with one partial result per slab.

    Parameters
    ----------
    func : callable
        Called as ``func(*views)`` on the slab views of ``arrays``; returns the
        partial result of that slab.
    *arrays : ndarray
        Read-only inputs sharing the size of their first axis.
    combine : callable, optional
        Binary function merging two partial results.
    initial : object, optional
        Starting value of the sequential combination.
    num_threads : int, optional
        See :func:`determine_num_threads`.

    Returns
    -------
    result : object
        ``combine`` folded over all partials, starting from ``initial``.
    """
    if not arrays:
        raise ValueError("At least one array is required")
    n = arrays[0].shape[0]
    slabs = _slabs(n, determine_num_threads(num_threads))
    partials = paramap(
        lambda slab: func(*(arr[slab] for arr in arrays)),
        slabs,
        num_threads=num_threads,
    )
    result = initial
    for partial in partials:
        result = combine(result, partial)
    return result
