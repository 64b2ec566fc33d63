from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping

import h5py
import numpy as np

from .block import Block, build_blocks
from .errors import (
    ClosedResourceError,
    DatasetNotFoundError,
    MalformedRelationError,
    ReductionIOError,
    UnsupportedDatatypeError,
)
from .tree import RELATION_WIDTH, BlockTree

logger = logging.getLogger(__name__)

INTEGER_SCALARS = "integer scalars"
BLOCK_COUNT_KEY = "globalnumblocks"
SCALAR_NAME_LENGTH = 80

# Tables FLASH writes next to the per-cell variables. Everything else at the
# root of a plot file is a variable dataset such as "dens" or "temp".
METADATA_DATASETS = frozenset(
    {
        "bflags",
        "block size",
        "bounding box",
        "coordinates",
        "gid",
        "integer runtime parameters",
        "integer scalars",
        "logical runtime parameters",
        "logical scalars",
        "node type",
        "processor number",
        "real runtime parameters",
        "real scalars",
        "refine level",
        "sim info",
        "string runtime parameters",
        "string scalars",
        "unknown names",
        "which child",
    }
)


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").strip()
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, np.generic):
        return value.item()
    return value


def _block_row(block: Block | int) -> int:
    block_id = block.id if isinstance(block, Block) else int(block)
    return block_id - 1


class FlashFile:
    """Read-only view of a FLASH HDF5 plot file.

    All HDF5 access goes through one lock so the reader can be shared by the
    threads reducing different datasets of the same file.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        try:
            self._file: h5py.File | None = h5py.File(self._path, "r")
        except OSError as exc:
            raise ReductionIOError(f"cannot open {self._path} for reading: {exc}") from exc
        self._lock = threading.Lock()
        self._names = [name for name, obj in self._file.items() if isinstance(obj, h5py.Dataset)]
        self._block_tree: BlockTree | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._file is None

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> "FlashFile":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _handle(self) -> h5py.File:
        if self._file is None:
            raise ClosedResourceError(f"{self._path} was closed")
        return self._file

    def _dataset(self, name: str) -> h5py.Dataset:
        handle = self._handle()
        if name not in self._names:
            raise DatasetNotFoundError(name, str(self._path))
        return handle[name]

    def dataset_names(self) -> list[str]:
        self._handle()
        return list(self._names)

    def variable_names(self) -> list[str]:
        self._handle()
        return [name for name in self._names if name not in METADATA_DATASETS]

    def has_dataset(self, name: str) -> bool:
        self._handle()
        return name in self._names

    def dtype(self, name: str) -> np.dtype:
        with self._lock:
            return self._dataset(name).dtype

    def dtype_kind(self, name: str) -> str:
        return self.dtype(name).kind

    def shape(self, name: str) -> tuple[int, ...]:
        with self._lock:
            return tuple(self._dataset(name).shape)

    def _read(self, name: str, block: Block | int | None, kinds: tuple[str, ...]) -> np.ndarray:
        with self._lock:
            dset = self._dataset(name)
            if dset.dtype.kind not in kinds:
                raise UnsupportedDatatypeError(
                    f"dataset '{name}' holds {dset.dtype}, cannot read it as kind {'/'.join(kinds)}"
                )
            if block is None:
                data = dset[()]
            else:
                row = _block_row(block)
                if dset.ndim == 0 or not 0 <= row < dset.shape[0]:
                    raise IndexError(f"dataset '{name}' has no row for block {row + 1}")
                data = dset[row]
        return np.asarray(data).reshape(-1)

    def read_int_array(self, name: str, block: Block | int | None = None) -> np.ndarray:
        return self._read(name, block, ("i", "u"))

    def read_float_array(self, name: str, block: Block | int | None = None) -> np.ndarray:
        return self._read(name, block, ("f",))

    def read_scalar_table(self, name: str) -> list[tuple[str, Any]]:
        """Return the ``(name, value)`` rows of a scalar or runtime parameter table in file order."""

        with self._lock:
            dset = self._dataset(name)
            fields = dset.dtype.names or ()
            if "name" not in fields or "value" not in fields:
                raise UnsupportedDatatypeError(f"dataset '{name}' is not a name/value table")
            table = dset[()]
        rows: list[tuple[str, Any]] = []
        for key, value in zip(table["name"].tolist(), table["value"].tolist()):
            rows.append((str(_decode(key)), _decode(value)))
        return rows

    def integer_scalars(self) -> dict[str, int]:
        return {key: int(value) for key, value in self.read_scalar_table(INTEGER_SCALARS)}

    def integer_scalar(self, name: str) -> int:
        scalars = self.integer_scalars()
        if name not in scalars:
            raise KeyError(f"no integer scalar named '{name}' in {self._path}")
        return scalars[name]

    @property
    def block_count(self) -> int:
        scalars = self.integer_scalars()
        if BLOCK_COUNT_KEY in scalars:
            return scalars[BLOCK_COUNT_KEY]
        return self.shape("gid")[0]

    @property
    def block_tree(self) -> BlockTree:
        if self._block_tree is None:
            self._block_tree = self._read_block_tree()
        return self._block_tree

    def _optional_table(self, name: str) -> np.ndarray | None:
        with self._lock:
            if name not in self._names:
                return None
            return np.asarray(self._dataset(name)[()])

    def _read_block_tree(self) -> BlockTree:
        gid = self._optional_table("gid")
        if gid is None:
            raise DatasetNotFoundError("gid", str(self._path))
        gid = np.asarray(gid, dtype=np.int64)
        if gid.ndim != 2 or gid.shape[1] < RELATION_WIDTH:
            raise MalformedRelationError(f"gid must have shape (blocks, >= {RELATION_WIDTH}), got {gid.shape}")

        count = gid.shape[0]
        expected = self.block_count
        if count != expected:
            raise MalformedRelationError(f"gid describes {count} blocks, file declares {expected}")

        blocks = build_blocks(
            count,
            refine_level=self._optional_table("refine level"),
            node_type=self._optional_table("node type"),
            block_size=self._optional_table("block size"),
            coordinates=self._optional_table("coordinates"),
            bounding_box=self._optional_table("bounding box"),
            which_child=self._optional_table("which child"),
            neighbors=gid[:, : gid.shape[1] - RELATION_WIDTH],
            bflags=self._optional_table("bflags"),
        )
        tree = BlockTree.from_relations(gid[:, -RELATION_WIDTH:], blocks)
        logger.debug("built block tree of %d blocks from %s", len(tree), self._path)
        return tree


class FlashWriter:
    """Create a new HDF5 file and fill it dataset by dataset."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        try:
            self._file: h5py.File | None = h5py.File(self._path, "w")
        except OSError as exc:
            raise ReductionIOError(f"cannot create {self._path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._file is None

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "FlashWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _handle(self) -> h5py.File:
        if self._file is None:
            raise ClosedResourceError(f"{self._path} was closed")
        return self._file

    def _write_array(
        self,
        name: str,
        data: np.ndarray,
        dims: Iterable[int],
        attributes: Mapping[str, Any] | None,
    ) -> h5py.Dataset:
        handle = self._handle()
        shape = tuple(int(d) for d in dims)
        if int(np.prod(shape)) != data.size:
            raise ValueError(f"cannot write {data.size} values of '{name}' with dimensions {shape}")
        try:
            dset = handle.create_dataset(name, data=data.reshape(shape))
            for key, value in (attributes or {}).items():
                dset.attrs[key] = np.array([value], dtype=data.dtype)
        except (OSError, ValueError) as exc:
            raise ReductionIOError(f"cannot write dataset '{name}' to {self._path}: {exc}") from exc
        return dset

    def write_int_array(
        self,
        name: str,
        data: Any,
        dims: Iterable[int],
        attributes: Mapping[str, Any] | None = None,
    ) -> h5py.Dataset:
        arr = np.asarray(data)
        if arr.dtype.kind not in ("i", "u"):
            raise UnsupportedDatatypeError(f"write_int_array got {arr.dtype} data for '{name}'")
        return self._write_array(name, arr, dims, attributes)

    def write_float_array(
        self,
        name: str,
        data: Any,
        dims: Iterable[int],
        attributes: Mapping[str, Any] | None = None,
    ) -> h5py.Dataset:
        arr = np.asarray(data)
        if arr.dtype.kind != "f":
            raise UnsupportedDatatypeError(f"write_float_array got {arr.dtype} data for '{name}'")
        return self._write_array(name, arr, dims, attributes)

    def write_scalar_table(
        self,
        name: str,
        pairs: Iterable[tuple[str, Any]],
        dtype: np.dtype | None = None,
    ) -> h5py.Dataset:
        """Write a FLASH name/value table, names padded like FLASH pads them."""

        handle = self._handle()
        if dtype is None:
            dtype = np.dtype([("name", f"S{SCALAR_NAME_LENGTH}"), ("value", "<i4")])
        width = dtype["name"].itemsize
        rows = [(f"{key:{width}s}".encode("utf-8")[:width], value) for key, value in pairs]
        table = np.array(rows, dtype=dtype)
        try:
            return handle.create_dataset(name, data=table)
        except (OSError, ValueError) as exc:
            raise ReductionIOError(f"cannot write table '{name}' to {self._path}: {exc}") from exc

    def copy_dataset(self, source: FlashFile, name: str) -> None:
        handle = self._handle()
        with source._lock:
            src = source._dataset(name)
            try:
                src.file.copy(src, handle, name=name)
            except (OSError, ValueError) as exc:
                raise ReductionIOError(f"cannot copy dataset '{name}' to {self._path}: {exc}") from exc
