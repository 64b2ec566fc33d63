from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pytest

h5py = pytest.importorskip("h5py")

from conftest import INTEGER_SCALAR_ROWS, NUM_BLOCKS, cell_values  # noqa: E402
from octreduce.errors import (  # noqa: E402
    DatasetNotFoundError,
    ReductionError,
    UnsupportedDatatypeError,
)
from octreduce.flash import FlashWriter  # noqa: E402
from octreduce.process import (  # noqa: E402
    PHYSICAL_POLICIES,
    CompositeReduce,
    ReductionConfig,
    ReductionProcess,
    StandardReduce,
    density_weighted_mean,
    parse_strategy,
)
from octreduce.reducers import ReducerType  # noqa: E402


def _octants(values: np.ndarray) -> np.ndarray:
    """(blocks, 4, 4, 4) -> (blocks, 2, 2, 2, 8), independent of the engine's gather."""

    blocks, x, y, z = values.shape
    split = values.reshape(blocks, x // 2, 2, y // 2, 2, z // 2, 2)
    return split.transpose(0, 1, 3, 5, 2, 4, 6).reshape(blocks, x // 2, y // 2, z // 2, 8)


def _reduce(path: Path, out_dir: Path, **kwargs) -> Path:
    config = ReductionConfig(target_directory=out_dir, **kwargs)
    return ReductionProcess(config).reduce_file(path)


def test_output_layout_and_metadata(flash_file: Path, tmp_path: Path) -> None:
    out = _reduce(flash_file, tmp_path / "out")
    assert out == tmp_path / "out" / f"{flash_file.name}_reduced"

    with h5py.File(flash_file, "r") as src, h5py.File(out, "r") as dst:
        assert set(dst.keys()) == set(src.keys())
        for name in ("gid", "refine level", "which child", "bounding box", "real scalars", "unknown names"):
            np.testing.assert_array_equal(dst[name][()], src[name][()])

        table = dst["integer scalars"][()]
        assert table.dtype == src["integer scalars"].dtype
        rows = [(n.decode().strip(), int(v)) for n, v in zip(table["name"], table["value"])]
        halved = {"nxb": 2, "nyb": 2, "nzb": 2}
        assert rows == [(k, halved.get(k, v)) for k, v in INTEGER_SCALAR_ROWS]

        for name in ("dens", "temp", "flag"):
            assert dst[name].shape == (NUM_BLOCKS, 2, 2, 2)
            assert dst[name].dtype == src[name].dtype


def test_mean_values_and_extrema(flash_file: Path, tmp_path: Path) -> None:
    out = _reduce(flash_file, tmp_path / "out")
    dens = cell_values()
    expected = _octants(dens).astype(np.float64).mean(axis=-1).astype(np.float32)

    with h5py.File(out, "r") as dst:
        reduced = dst["dens"][()]
        np.testing.assert_allclose(reduced, expected)
        assert dst["dens"].attrs["minimum"][0] == pytest.approx(11.5)
        assert dst["dens"].attrs["maximum"][0] == pytest.approx(8 * 64 + 53.5)
        assert dst["dens"].attrs["minimum"][0] == reduced.min()
        assert dst["dens"].attrs["maximum"][0] == reduced.max()

        flag = dst["flag"][()]
        assert flag.dtype == np.int32
        raw = _octants(cell_values(dtype=np.int32, offset=0.0)).astype(np.float64).mean(axis=-1)
        np.testing.assert_array_equal(flag, np.floor(raw + 0.5).astype(np.int32))
        assert dst["flag"].attrs["minimum"].dtype == np.int32
        assert dst["flag"].attrs["maximum"][0] == flag.max()


def test_median_reduction(flash_file: Path, tmp_path: Path) -> None:
    out = _reduce(flash_file, tmp_path / "out", reducer_type="median")
    expected = np.median(_octants(cell_values(offset=100.0)).astype(np.float64), axis=-1)
    with h5py.File(out, "r") as dst:
        np.testing.assert_allclose(dst["temp"][()], expected.astype(np.float32))


def test_physical_temperature_is_density_weighted(flash_file: Path, tmp_path: Path) -> None:
    out = _reduce(flash_file, tmp_path / "out", physical=True, dataset_names=("temp",))

    rho = _octants(cell_values(offset=1.0)).astype(np.float64)
    temp = _octants(cell_values(offset=100.0)).astype(np.float64)
    expected = (temp * rho).sum(axis=-1) / rho.sum(axis=-1)

    with h5py.File(out, "r") as dst:
        assert "dens" not in dst
        np.testing.assert_allclose(dst["temp"][()], expected.astype(np.float32), rtol=1e-6)
        # Weighting pulls the value above the plain mean for rising density.
        plain = temp.mean(axis=-1)
        assert (dst["temp"][()] >= plain.astype(np.float32)).all()


def test_dataset_filter(flash_file: Path, tmp_path: Path) -> None:
    out = _reduce(flash_file, tmp_path / "out", dataset_names=("flag", "dens", "flag"))
    with h5py.File(out, "r") as dst:
        assert "temp" not in dst
        assert "flag" in dst and "dens" in dst
        assert "gid" in dst


def test_unknown_and_metadata_datasets_rejected(flash_file: Path, tmp_path: Path) -> None:
    with pytest.raises(DatasetNotFoundError, match="pres"):
        _reduce(flash_file, tmp_path / "out", dataset_names=("pres",))
    with pytest.raises(ReductionError, match="metadata"):
        _reduce(flash_file, tmp_path / "out", dataset_names=("gid",))


def test_unsupported_datatype(make_flash_file, tmp_path: Path) -> None:
    path = make_flash_file(extra={"cplx": np.zeros((NUM_BLOCKS, 4, 4, 4), dtype=np.complex64)})
    with pytest.raises(UnsupportedDatatypeError):
        _reduce(path, tmp_path / "out")

    # The half-written output is removed, the directory itself stays.
    assert (tmp_path / "out").is_dir()
    assert not (tmp_path / "out" / f"{path.name}_reduced").exists()


def test_failed_reduction_removes_stale_output(make_flash_file, tmp_path: Path) -> None:
    path = make_flash_file()
    out = _reduce(path, tmp_path / "out", dataset_names=("flag",))
    assert out.exists()

    process = ReductionProcess(
        ReductionConfig(target_directory=tmp_path / "out", dataset_names=("flag",)),
        policies={"flag": CompositeReduce("flag", "dens", density_weighted_mean)},
    )
    with pytest.raises(UnsupportedDatatypeError):
        process.reduce_file(path)
    assert not out.exists()


def test_extrema_ignore_nan_blocks(make_flash_file, tmp_path: Path) -> None:
    pres = cell_values(offset=1.0)
    pres[0] = np.nan
    path = make_flash_file(extra={"pres": pres})
    out = _reduce(path, tmp_path / "out", dataset_names=("pres",))

    with h5py.File(out, "r") as dst:
        reduced = dst["pres"][()]
        assert np.isnan(reduced[0]).all()
        assert dst["pres"].attrs["minimum"][0] == pytest.approx(64 + 11.5)
        assert dst["pres"].attrs["maximum"][0] == pytest.approx(8 * 64 + 53.5)


def test_extrema_of_all_nan_dataset(make_flash_file, tmp_path: Path) -> None:
    pres = np.full((NUM_BLOCKS, 4, 4, 4), np.nan, dtype=np.float32)
    path = make_flash_file(extra={"pres": pres})
    out = _reduce(path, tmp_path / "out", dataset_names=("pres",))

    with h5py.File(out, "r") as dst:
        assert np.isnan(dst["pres"].attrs["minimum"][0])
        assert np.isnan(dst["pres"].attrs["maximum"][0])


def test_physical_policy_needs_float_data(make_flash_file, tmp_path: Path) -> None:
    path = make_flash_file()
    policies = {"flag": CompositeReduce("flag", "dens", density_weighted_mean)}
    process = ReductionProcess(
        ReductionConfig(target_directory=tmp_path / "out", dataset_names=("flag",)),
        policies=policies,
    )
    with pytest.raises(UnsupportedDatatypeError):
        process.reduce_file(path)

    missing_aux = ReductionProcess(
        ReductionConfig(target_directory=tmp_path / "out", dataset_names=("temp",)),
        policies={"temp": CompositeReduce("temp", "pres", density_weighted_mean)},
    )
    with pytest.raises(DatasetNotFoundError, match="pres"):
        missing_aux.reduce_file(path)


def test_missing_block_dimensions(tmp_path: Path) -> None:
    path = tmp_path / "bare"
    with FlashWriter(path) as w:
        w.write_scalar_table("integer scalars", [("globalnumblocks", 1)])
        w.write_int_array("gid", np.array([[-21] * 6 + [-1] * 9], dtype=np.int32), (1, 15))

    with pytest.raises(ReductionError, match="nxb"):
        _reduce(path, tmp_path / "out")


def test_parallel_matches_serial(flash_file: Path, tmp_path: Path) -> None:
    serial = _reduce(flash_file, tmp_path / "serial", workers=1, physical=True)
    parallel = _reduce(flash_file, tmp_path / "parallel", workers=4, physical=True)

    with h5py.File(serial, "r") as a, h5py.File(parallel, "r") as b:
        assert set(a.keys()) == set(b.keys())
        for name in ("dens", "temp", "flag"):
            np.testing.assert_array_equal(a[name][()], b[name][()])
            assert a[name].attrs["minimum"][0] == b[name].attrs["minimum"][0]


def test_verbose_logging(flash_file: Path, tmp_path: Path, caplog) -> None:
    caplog.set_level(logging.INFO, logger="octreduce")
    config = ReductionConfig(target_directory=tmp_path / "out", dataset_names=("dens",))
    ReductionProcess(config).reduce_file(flash_file, verbose=True)
    assert "9 blocks (8 leaves)" in caplog.text
    assert "reducing 'dens'" in caplog.text


def test_policies() -> None:
    quiet = ReductionProcess(ReductionConfig(target_directory="out"))
    assert quiet.policy_for("temp") == StandardReduce("temp")

    physical = ReductionProcess(ReductionConfig(target_directory="out", physical=True))
    assert physical.policy_for("temp") is PHYSICAL_POLICIES["temp"]
    assert physical.policy_for("dens") == StandardReduce("dens")


def test_density_weighted_mean() -> None:
    values = np.array([[1.0, 3.0], [1.0, 3.0]])
    density = np.array([[1.0, 3.0], [0.0, 0.0]])
    np.testing.assert_allclose(density_weighted_mean(values, density), [2.5, 2.0])


def test_reduction_config() -> None:
    config = ReductionConfig(target_directory="out", reducer_type="MEDIAN", dataset_names=("a", "b", "a"))
    assert config.target_directory == Path("out")
    assert config.reducer_type is ReducerType.MEDIAN
    assert config.dataset_names == ("a", "b")
    assert not config.reduce_all
    assert ReductionConfig(target_directory="out").reduce_all

    with pytest.raises(ValueError):
        ReductionConfig(target_directory="out", workers=0)
    with pytest.raises(ValueError):
        ReductionConfig(target_directory="out", reducer_type="mode")


@pytest.mark.parametrize(
    "name, expected",
    [
        ("mean", (ReducerType.MEAN, False)),
        ("Median", (ReducerType.MEDIAN, False)),
        ("physicalmean", (ReducerType.MEAN, True)),
        ("PhysicalMedian", (ReducerType.MEDIAN, True)),
    ],
)
def test_parse_strategy(name: str, expected) -> None:
    assert parse_strategy(name) == expected


@pytest.mark.parametrize("name", ["physical", "mode", ""])
def test_parse_strategy_rejects_unknown(name: str) -> None:
    with pytest.raises(ValueError):
        parse_strategy(name)
