from __future__ import annotations

from pathlib import Path
from typing import Callable

import numpy as np
import pytest

NXB = NYB = NZB = 4
NUM_BLOCKS = 9

INTEGER_SCALAR_ROWS = [
    ("nxb", NXB),
    ("nyb", NYB),
    ("nzb", NZB),
    ("globalnumblocks", NUM_BLOCKS),
    ("dimensionality", 3),
    ("nstep", 100),
]


def _table(rows, value_dtype) -> np.ndarray:
    dtype = np.dtype([("name", "S80"), ("value", value_dtype)])
    return np.array([(f"{k:80s}".encode(), v) for k, v in rows], dtype=dtype)


def _gid() -> np.ndarray:
    """Root block 1 refined into blocks 2..9, 6 neighbor + 1 parent + 8 child columns."""

    gid = np.full((NUM_BLOCKS, 15), -1, dtype=np.int32)
    gid[0, :6] = -21
    gid[0, 7:] = np.arange(2, 10)
    for k in range(8):
        row = gid[1 + k]
        bits = (k & 1, (k >> 1) & 1, (k >> 2) & 1)
        for axis, bit in enumerate(bits):
            step = 1 << axis
            lo, hi = 2 * axis, 2 * axis + 1
            row[lo] = 2 + k - step if bit == 1 else -21
            row[hi] = 2 + k + step if bit == 0 else -21
        row[6] = 1
    return gid


def cell_values(block_count: int = NUM_BLOCKS, dtype=np.float32, offset: float = 1.0) -> np.ndarray:
    cells = NXB * NYB * NZB
    return (np.arange(block_count * cells, dtype=np.float64) + offset).astype(dtype).reshape(
        block_count, NZB, NYB, NXB
    )


def write_flash_file(path: Path, *, extra: dict[str, np.ndarray] | None = None) -> Path:
    h5py = pytest.importorskip("h5py")
    with h5py.File(path, "w") as f:
        f.create_dataset("integer scalars", data=_table(INTEGER_SCALAR_ROWS, "<i4"))
        f.create_dataset("real scalars", data=_table([("time", 0.5), ("dt", 1e-3)], "<f8"))
        f.create_dataset("integer runtime parameters", data=_table([("lrefine_max", 2)], "<i4"))
        f.create_dataset(
            "string scalars",
            data=_table([("geometry", f"{'cartesian':80s}".encode())], "S80"),
        )
        f.create_dataset("gid", data=_gid())
        f.create_dataset("refine level", data=np.array([1] + [2] * 8, dtype=np.int32))
        f.create_dataset("node type", data=np.array([2] + [1] * 8, dtype=np.int32))
        f.create_dataset("which child", data=np.array([-1] + list(range(1, 9)), dtype=np.int32))
        f.create_dataset("block size", data=np.array([[1.0] * 3] + [[0.5] * 3] * 8, dtype=np.float32))
        coords = np.zeros((NUM_BLOCKS, 3), dtype=np.float32)
        for k in range(8):
            coords[1 + k] = [0.25 + 0.5 * ((k >> a) & 1) - 0.5 for a in range(3)]
        f.create_dataset("coordinates", data=coords)
        bbox = np.stack([coords - 0.25, coords + 0.25], axis=-1)
        bbox[0] = [[-0.5, 0.5]] * 3
        f.create_dataset("bounding box", data=bbox.astype(np.float32))
        f.create_dataset("unknown names", data=np.array([[b"dens"], [b"temp"], [b"flag"]]))

        f.create_dataset("dens", data=cell_values(offset=1.0))
        f.create_dataset("temp", data=cell_values(offset=100.0))
        f.create_dataset("flag", data=cell_values(dtype=np.int32, offset=0.0))
        for name, data in (extra or {}).items():
            f.create_dataset(name, data=data)
    return path


@pytest.fixture
def flash_file(tmp_path: Path) -> Path:
    return write_flash_file(tmp_path / "sim_hdf5_plt_cnt_0000")


@pytest.fixture
def make_flash_file(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "sim_hdf5_plt_cnt_0001", **kwargs) -> Path:
        return write_flash_file(tmp_path / name, **kwargs)

    return _make
