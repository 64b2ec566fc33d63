from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence, Union

import numpy as np

from .dataset_reducer import CombineFn, StatisticalDatasetReducer
from .errors import DatasetNotFoundError, ReductionError, ReductionIOError, UnsupportedDatatypeError
from .flash import INTEGER_SCALARS, METADATA_DATASETS, FlashFile, FlashWriter
from .reducers import ReducerType, StatisticalReducer, create_reducer

logger = logging.getLogger(__name__)

DIMENSION_KEYS = ("nxb", "nyb", "nzb")
OUTPUT_SUFFIX = "_reduced"


@dataclass(frozen=True)
class StandardReduce:
    name: str


@dataclass(frozen=True)
class CompositeReduce:
    """Reduce ``name`` octant by octant together with a second dataset."""

    name: str
    auxiliary: str
    combine: CombineFn = field(compare=False)


ReductionPolicy = Union[StandardReduce, CompositeReduce]


def density_weighted_mean(values: np.ndarray, density: np.ndarray) -> np.ndarray:
    """Mass-weighted mean of each octant: ``sum(v * rho) / sum(rho)``.

    Octants without mass fall back to the plain mean of the values.
    """

    v = np.asarray(values, dtype=np.float64)
    rho = np.asarray(density, dtype=np.float64)
    total = rho.sum(axis=1)
    weighted = (v * rho).sum(axis=1)
    safe_total = np.where(total != 0.0, total, 1.0)
    return np.where(total != 0.0, weighted / safe_total, v.mean(axis=1))


PHYSICAL_POLICIES: Mapping[str, ReductionPolicy] = {
    "temp": CompositeReduce("temp", "dens", density_weighted_mean),
}

_PHYSICAL_PREFIX = "physical"


def parse_strategy(name: str) -> tuple[ReducerType, bool]:
    """Map a command-line strategy such as ``median`` or ``physicalmean``."""

    key = str(name).strip().lower()
    physical = key.startswith(_PHYSICAL_PREFIX)
    if physical:
        key = key[len(_PHYSICAL_PREFIX) :]
    return ReducerType.parse(key), physical


@dataclass(frozen=True)
class ReductionConfig:
    target_directory: Path
    reducer_type: ReducerType = ReducerType.MEAN
    dataset_names: tuple[str, ...] = ()
    physical: bool = False
    workers: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "target_directory", Path(self.target_directory))
        object.__setattr__(self, "reducer_type", ReducerType.parse(self.reducer_type))
        names: list[str] = []
        for name in self.dataset_names or ():
            if name not in names:
                names.append(str(name))
        object.__setattr__(self, "dataset_names", tuple(names))
        if int(self.workers) < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        object.__setattr__(self, "workers", int(self.workers))

    @property
    def reduce_all(self) -> bool:
        return not self.dataset_names


def block_dimensions(source: FlashFile) -> tuple[int, int, int]:
    scalars = source.integer_scalars()
    missing = [key for key in DIMENSION_KEYS if key not in scalars]
    if missing:
        raise ReductionError(f"{source.path} lacks integer scalars {', '.join(missing)}")
    x, y, z = (int(scalars[key]) for key in DIMENSION_KEYS)
    return x, y, z


class ReductionProcess:
    """Write a half-resolution copy of FLASH plot files.

    Metadata tables are copied, the block dimensions in ``integer scalars``
    are halved, and every selected variable dataset is reduced block by
    block and written once with ``minimum``/``maximum`` attributes.
    """

    def __init__(
        self,
        config: ReductionConfig,
        policies: Mapping[str, ReductionPolicy] | None = None,
    ) -> None:
        self._config = config
        self._reducer: StatisticalReducer = create_reducer(config.reducer_type)
        if policies is None:
            policies = PHYSICAL_POLICIES if config.physical else {}
        self._policies = dict(policies)

    @property
    def config(self) -> ReductionConfig:
        return self._config

    def policy_for(self, name: str) -> ReductionPolicy:
        return self._policies.get(name, StandardReduce(name))

    def output_path(self, path: str | Path) -> Path:
        return self._config.target_directory / f"{Path(path).name}{OUTPUT_SUFFIX}"

    def reduce_file(self, path: str | Path, verbose: bool = False) -> Path:
        path = Path(path)
        try:
            self._config.target_directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ReductionIOError(f"cannot create {self._config.target_directory}: {exc}") from exc
        out_path = self.output_path(path)

        with FlashFile(path) as source:
            block_count = source.block_count
            dimensions = block_dimensions(source)
            # Built before any worker thread touches the source.
            tree = source.block_tree
            if verbose:
                logger.info(
                    "%s: %d blocks (%d leaves) of %dx%dx%d cells",
                    path.name,
                    block_count,
                    len(tree.leaves()),
                    *dimensions,
                )

            engine = StatisticalDatasetReducer(dimensions, self._reducer)
            policies = self._resolve_policies(source)

            try:
                with FlashWriter(out_path) as destination:
                    self._copy_metadata(source, destination)
                    self._write_integer_scalars(source, destination)
                    self._reduce_datasets(engine, source, destination, policies, block_count, verbose)
            except Exception:
                # Only complete files stay in the target directory.
                out_path.unlink(missing_ok=True)
                logger.debug("removed incomplete output %s", out_path)
                raise

        return out_path

    def _resolve_policies(self, source: FlashFile) -> list[ReductionPolicy]:
        variables = source.variable_names()
        names = list(self._config.dataset_names) or variables
        policies: list[ReductionPolicy] = []
        for name in names:
            if not source.has_dataset(name):
                raise DatasetNotFoundError(name, str(source.path))
            if name in METADATA_DATASETS:
                raise ReductionError(f"'{name}' is a metadata table, not a variable dataset")
            policy = self.policy_for(name)
            if isinstance(policy, CompositeReduce) and not source.has_dataset(policy.auxiliary):
                raise DatasetNotFoundError(policy.auxiliary, str(source.path))
            policies.append(policy)
        return policies

    def _copy_metadata(self, source: FlashFile, destination: FlashWriter) -> None:
        variables = set(source.variable_names())
        for name in source.dataset_names():
            if name in variables or name == INTEGER_SCALARS:
                continue
            destination.copy_dataset(source, name)

    def _write_integer_scalars(self, source: FlashFile, destination: FlashWriter) -> None:
        pairs = [
            (key, value // 2 if key in DIMENSION_KEYS else value)
            for key, value in source.read_scalar_table(INTEGER_SCALARS)
        ]
        destination.write_scalar_table(INTEGER_SCALARS, pairs, dtype=source.dtype(INTEGER_SCALARS))

    def _reduce_datasets(
        self,
        engine: StatisticalDatasetReducer,
        source: FlashFile,
        destination: FlashWriter,
        policies: Sequence[ReductionPolicy],
        block_count: int,
        verbose: bool,
    ) -> None:
        level = logging.INFO if verbose else logging.DEBUG
        workers = min(self._config.workers, len(policies))
        if workers <= 1:
            for policy in policies:
                logger.log(level, "reducing '%s'", policy.name)
                blocks = self._reduce_one(engine, source, policy)
                self._write_reduced(destination, policy.name, blocks, engine, block_count)
            return

        # Reads are serialized by the source; writes stay on this thread.
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="octreduce") as pool:
            futures = [pool.submit(self._reduce_one, engine, source, policy) for policy in policies]
            for policy, future in zip(policies, futures):
                blocks = future.result()
                logger.log(level, "reduced '%s'", policy.name)
                self._write_reduced(destination, policy.name, blocks, engine, block_count)

    def _reduce_one(
        self,
        engine: StatisticalDatasetReducer,
        source: FlashFile,
        policy: ReductionPolicy,
    ) -> list[np.ndarray]:
        if isinstance(policy, CompositeReduce):
            for name in (policy.name, policy.auxiliary):
                kind = source.dtype_kind(name)
                if kind != "f":
                    raise UnsupportedDatatypeError(
                        f"composite reduction of '{policy.name}' needs float data, '{name}' has kind '{kind}'"
                    )
            return engine.reduce_composite_dataset(source, policy.name, policy.auxiliary, policy.combine)
        return engine.reduce_dataset(source, policy.name)

    def _write_reduced(
        self,
        destination: FlashWriter,
        name: str,
        blocks: Sequence[np.ndarray],
        engine: StatisticalDatasetReducer,
        block_count: int,
    ) -> None:
        if len(blocks) != block_count:
            raise ReductionError(f"'{name}' reduced to {len(blocks)} blocks, expected {block_count}")

        per_block = engine.reduced_cells_per_block
        dtype = blocks[0].dtype
        flat = np.empty(block_count * per_block, dtype=dtype)
        for idx, values in enumerate(blocks):
            flat[idx * per_block : (idx + 1) * per_block] = values

        # NaN cells are ignored; an all-NaN dataset reports NaN extrema.
        if dtype.kind == "f" and np.isnan(flat).all():
            minimum = maximum = dtype.type(np.nan)
        else:
            minimum, maximum = np.nanmin(flat), np.nanmax(flat)

        dims = (block_count, *engine.reduced_dimensions)
        attributes = {"minimum": minimum, "maximum": maximum}
        if dtype.kind in ("i", "u"):
            destination.write_int_array(name, flat, dims, attributes)
        else:
            destination.write_float_array(name, flat, dims, attributes)
