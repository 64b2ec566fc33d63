from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import numpy as np

from .errors import UnsupportedDatatypeError
from .reducers import StatisticalReducer
from .tree import BlockTree

logger = logging.getLogger(__name__)

OCTANT_SIZE = 8

# Source offsets gathered for every output cell, in buffer order.
OCTANT_OFFSETS: tuple[tuple[int, int, int], ...] = (
    (0, 0, 0),
    (1, 0, 0),
    (0, 1, 0),
    (1, 1, 0),
    (0, 0, 1),
    (1, 0, 1),
    (0, 1, 1),
    (1, 1, 1),
)

CombineFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


class BlockSource(Protocol):
    """What the engine needs from an open snapshot."""

    @property
    def block_tree(self) -> BlockTree: ...

    def dtype_kind(self, name: str) -> str: ...

    def read_int_array(self, name: str, block: Any = None) -> np.ndarray: ...

    def read_float_array(self, name: str, block: Any = None) -> np.ndarray: ...


def cell_index(x: int, y: int, z: int, y_size: int, z_size: int) -> int:
    """Position of cell ``(x, y, z)`` in a block flattened in x, y, z order."""

    return x * y_size * z_size + y * z_size + z


class StatisticalDatasetReducer:
    """Halve the resolution of every block of a dataset.

    Each output cell is the reducer applied to one 2x2x2 octant of source
    cells. Nothing mutable lives on the instance: the octant buffer belongs
    to the call that allocated it, so one engine can serve several threads.
    """

    def __init__(self, dimensions: tuple[int, int, int], reducer: StatisticalReducer) -> None:
        dims = tuple(int(d) for d in dimensions)
        if len(dims) != 3:
            raise ValueError(f"expected 3 block dimensions, got {len(dims)}")
        for d in dims:
            if d < 2 or d % 2 != 0:
                raise ValueError(f"block dimensions must be positive and even, got {dims}")
        self._dims: tuple[int, int, int] = (dims[0], dims[1], dims[2])
        self._reducer = reducer

    @property
    def dimensions(self) -> tuple[int, int, int]:
        return self._dims

    @property
    def reduced_dimensions(self) -> tuple[int, int, int]:
        x, y, z = self._dims
        return x // 2, y // 2, z // 2

    @property
    def reducer(self) -> StatisticalReducer:
        return self._reducer

    @property
    def cells_per_block(self) -> int:
        x, y, z = self._dims
        return x * y * z

    @property
    def reduced_cells_per_block(self) -> int:
        return self.cells_per_block // OCTANT_SIZE

    def new_scratch(self, dtype: Any) -> np.ndarray:
        return np.empty((self.reduced_cells_per_block, OCTANT_SIZE), dtype=dtype)

    def gather_octants(self, flat: Any, scratch: np.ndarray | None = None) -> np.ndarray:
        """Fill ``scratch`` row by row with the octant of each output cell.

        Rows follow the output order (x outer, y middle, z inner); columns
        follow ``OCTANT_OFFSETS``.
        """

        arr = np.asarray(flat)
        if arr.ndim != 1:
            arr = arr.reshape(-1)
        if arr.size != self.cells_per_block:
            raise ValueError(
                f"block holds {arr.size} cells, expected {self.cells_per_block} for dimensions {self._dims}"
            )
        if scratch is None or scratch.dtype != arr.dtype:
            scratch = self.new_scratch(arr.dtype)
        elif scratch.shape != (self.reduced_cells_per_block, OCTANT_SIZE):
            raise ValueError(f"scratch buffer has shape {scratch.shape}")

        cube = arr.reshape(self._dims)
        for column, (dx, dy, dz) in enumerate(OCTANT_OFFSETS):
            scratch[:, column] = cube[dx::2, dy::2, dz::2].reshape(-1)
        return scratch

    def reduce_block(self, flat: Any, scratch: np.ndarray | None = None) -> np.ndarray:
        octants = self.gather_octants(flat, scratch)
        return self._reducer.reduce_octants(octants)

    def reduce_block_pair(
        self,
        flat: Any,
        auxiliary: Any,
        combine: CombineFn,
        scratch: tuple[np.ndarray, np.ndarray] | None = None,
    ) -> np.ndarray:
        primary_buf, aux_buf = scratch if scratch is not None else (None, None)
        octants = self.gather_octants(flat, primary_buf)
        aux_octants = self.gather_octants(auxiliary, aux_buf)
        result = np.asarray(combine(octants, aux_octants))
        if result.shape != (self.reduced_cells_per_block,):
            raise ValueError(f"combine function returned shape {result.shape}")
        return result.astype(octants.dtype, copy=False)

    def reduce_int_dataset(self, source: BlockSource, name: str) -> list[np.ndarray]:
        return self._reduce_blocks(source, name, source.read_int_array)

    def reduce_float_dataset(self, source: BlockSource, name: str) -> list[np.ndarray]:
        return self._reduce_blocks(source, name, source.read_float_array)

    def reduce_dataset(self, source: BlockSource, name: str) -> list[np.ndarray]:
        kind = source.dtype_kind(name)
        if kind in ("i", "u"):
            return self.reduce_int_dataset(source, name)
        if kind == "f":
            return self.reduce_float_dataset(source, name)
        raise UnsupportedDatatypeError(f"dataset '{name}' has unsupported element kind '{kind}'")

    def reduce_composite_dataset(
        self,
        source: BlockSource,
        name: str,
        auxiliary: str,
        combine: CombineFn,
    ) -> list[np.ndarray]:
        results: list[np.ndarray] = []
        scratch: tuple[np.ndarray, np.ndarray] | None = None
        for block in source.block_tree:
            values = source.read_float_array(name, block=block)
            aux = source.read_float_array(auxiliary, block=block)
            if scratch is None:
                scratch = (self.new_scratch(values.dtype), self.new_scratch(aux.dtype))
            results.append(self.reduce_block_pair(values, aux, combine, scratch))
        logger.debug("reduced '%s' with '%s' over %d blocks", name, auxiliary, len(results))
        return results

    def _reduce_blocks(
        self,
        source: BlockSource,
        name: str,
        read: Callable[..., np.ndarray],
    ) -> list[np.ndarray]:
        results: list[np.ndarray] = []
        scratch: np.ndarray | None = None
        for block in source.block_tree:
            values = read(name, block=block)
            if scratch is None or scratch.dtype != values.dtype:
                scratch = self.new_scratch(values.dtype)
            results.append(self.reduce_block(values, scratch))
        logger.debug("reduced '%s' over %d blocks", name, len(results))
        return results
