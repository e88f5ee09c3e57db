"""
Row-block parallelism.

Work over a matrix is split into contiguous blocks of rows, each block is
processed independently, and the per-block results are concatenated back
in the original row order. The worker pool is passed in explicitly as an
*executor*: any callable ``executor(func, items)`` returning
``[func(item) for item in items]`` in item order.
"""

import os
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from functools import partial

import numpy as np
from threadpoolctl import threadpool_limits

# Aim for blocks of roughly this many matrix cells
_TARGET_BLOCK_COST = 100_000
# Blocks per worker, so uneven blocks still balance
_BLOCKS_PER_WORKER = 4


def serial_executor(func, items):
    """Run ``func`` over ``items`` in the calling thread."""
    return [func(item) for item in items]


def _single_threaded(func, item):
    with threadpool_limits(limits=1):
        return func(item)


class PoolExecutor:
    """Executor backed by a ``concurrent.futures`` pool.

    Numerical libraries inside each task are limited to one thread, so the
    outer level of parallelism does not oversubscribe the machine.

    Parameters
    ----------
    n_workers : int, optional
        Number of workers. Defaults to ``os.cpu_count()``.
    kind : str
        'process' or 'thread'. With 'process', ``func`` and the items must
        be picklable (module-level functions and arrays).
    """

    def __init__(self, n_workers=None, kind="process"):
        if kind not in ("process", "thread"):
            raise ValueError("kind must be 'process' or 'thread'")
        if n_workers is None:
            n_workers = os.cpu_count() or 1
        if n_workers < 1:
            raise ValueError("n_workers must be at least 1")
        self.n_workers = int(n_workers)
        self.kind = kind
        self._pool = None

    def _make_pool(self):
        pool_cls = ProcessPoolExecutor if self.kind == "process" else ThreadPoolExecutor
        return pool_cls(max_workers=self.n_workers)

    def __enter__(self):
        if self._pool is None and self.n_workers > 1:
            self._pool = self._make_pool()
        return self

    def __exit__(self, *exc):
        if self._pool is not None:
            self._pool.shutdown()
            self._pool = None
        return False

    def __call__(self, func, items):
        items = list(items)
        if self.n_workers == 1 or len(items) <= 1:
            return serial_executor(func, items)
        task = partial(_single_threaded, func)
        # map() yields in submission order, not completion order
        if self._pool is not None:
            return list(self._pool.map(task, items))
        with self._make_pool() as pool:
            return list(pool.map(task, items))

    def __repr__(self):
        return f"PoolExecutor(n_workers={self.n_workers}, kind='{self.kind}')"


def pool_executor(n_workers=None, kind="process"):
    """Create an executor backed by a process or thread pool."""
    return PoolExecutor(n_workers=n_workers, kind=kind)


def executor_workers(executor):
    """Number of workers an executor runs, 1 if unknown."""
    return int(getattr(executor, "n_workers", 1))


def partitions(n, cost_per_row=1, executor=None, target_cost=_TARGET_BLOCK_COST):
    """Split ``range(n)`` into contiguous slices.

    Parameters
    ----------
    n : int
        Number of rows.
    cost_per_row : float
        Relative cost of one row, typically the number of columns.
    executor : callable, optional
        The executor the blocks will be sent to. More workers give more
        blocks.
    target_cost : float
        Approximate total cost of one block.

    Returns
    -------
    list of slice, in order, covering every row exactly once.
    """
    n = int(n)
    if n <= 0:
        return []
    cost_per_row = max(float(cost_per_row), 1.0)
    by_cost = int(np.ceil(n * cost_per_row / target_cost))
    by_workers = executor_workers(executor) * _BLOCKS_PER_WORKER \
        if executor_workers(executor) > 1 else 1
    n_blocks = min(n, max(1, by_cost, by_workers))
    bounds = np.linspace(0, n, n_blocks + 1).round().astype(int)
    return [slice(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


def map_row_blocks(func, blocks, executor=None):
    """Apply ``func`` to each block and concatenate results in block order.

    Each result must be an array whose first axis runs over the block's
    rows.
    """
    if executor is None:
        executor = serial_executor
    results = executor(func, blocks)
    if len(results) == 0:
        return np.zeros(0)
    return np.concatenate([np.asarray(r) for r in results], axis=0)


def run_by_rows(func, arrays, shared=(), executor=None, cost_per_row=None):
    """Partition row-aligned arrays and run ``func`` on each block.

    ``func(*block_arrays, *shared)`` is called with each array in
    ``arrays`` sliced to the block's rows; ``shared`` arguments are passed
    whole to every block. Results are concatenated in row order.
    """
    n = arrays[0].shape[0]
    if cost_per_row is None:
        cost_per_row = arrays[0].shape[1] if arrays[0].ndim > 1 else 1
    parts = partitions(n, cost_per_row, executor)
    if len(parts) == 0:
        # Zero rows still produce a correctly shaped empty result
        return func(*(tuple(a[0:0] for a in arrays) + tuple(shared)))
    feed = [tuple(a[part] for a in arrays) + tuple(shared) for part in parts]
    return map_row_blocks(partial(_star, func), feed, executor)


def _star(func, args):
    return func(*args)
