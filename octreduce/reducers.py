from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import numpy as np


def _is_integer(arr: np.ndarray) -> bool:
    return arr.dtype.kind in "iu"


def _check_numeric(arr: np.ndarray) -> None:
    if arr.dtype.kind not in "iuf":
        raise TypeError(f"cannot reduce values of dtype {arr.dtype}")


def round_half_up(values: Any) -> Any:
    """Round to nearest with ties away from -inf (``floor(x + 0.5)``)."""

    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


class StatisticalReducer(ABC):
    """Collapse a set of numbers into one representative value.

    Integer input yields an integer rounded to nearest, float input keeps its
    float type. Implementations hold no state, so one instance can be shared
    by any number of threads.
    """

    name: str = ""

    def reduce(self, values: Any) -> Any:
        arr = np.asarray(values)
        if arr.ndim != 1:
            arr = arr.reshape(-1)
        if arr.size == 0:
            raise ValueError("cannot reduce an empty array")
        return self.reduce_octants(arr.reshape(1, -1))[0]

    def reduce_octants(self, octants: np.ndarray) -> np.ndarray:
        """Reduce each row of a 2D array; the result has the input's dtype."""

        arr = np.asarray(octants)
        if arr.ndim != 2:
            raise ValueError(f"expected a 2D array of octants, got shape {arr.shape}")
        if arr.shape[1] == 0:
            raise ValueError("cannot reduce an empty array")
        _check_numeric(arr)
        if _is_integer(arr):
            return round_half_up(self._reduce_rows(arr.astype(np.float64))).astype(arr.dtype)
        return np.asarray(self._reduce_rows(arr)).astype(arr.dtype, copy=False)

    @abstractmethod
    def _reduce_rows(self, rows: np.ndarray) -> np.ndarray:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class MeanReducer(StatisticalReducer):
    name = "mean"

    def _reduce_rows(self, rows: np.ndarray) -> np.ndarray:
        return rows.sum(axis=1, dtype=np.float64) / rows.shape[1]


class MedianReducer(StatisticalReducer):
    """Middle of the sorted values; the mean of the two middle values for even sizes."""

    name = "median"

    def _reduce_rows(self, rows: np.ndarray) -> np.ndarray:
        # np.sort returns a copy, the caller's buffer stays untouched.
        ordered = np.sort(rows, axis=1)
        middle = ordered.shape[1] // 2
        if ordered.shape[1] % 2 == 1:
            return ordered[:, middle]
        return (ordered[:, middle] + ordered[:, middle - 1]) / 2


class ReducerType(Enum):
    MEAN = "mean"
    MEDIAN = "median"

    @classmethod
    def parse(cls, name: str | "ReducerType") -> "ReducerType":
        if isinstance(name, ReducerType):
            return name
        key = str(name).strip().lower()
        for member in cls:
            if member.value == key:
                return member
        choices = ", ".join(m.value for m in cls)
        raise ValueError(f"unknown reducer type '{name}' (expected one of: {choices})")


def create_reducer(reducer_type: ReducerType | str) -> StatisticalReducer:
    kind = ReducerType.parse(reducer_type)
    if kind is ReducerType.MEAN:
        return MeanReducer()
    return MedianReducer()
