from __future__ import annotations


class ReductionError(RuntimeError):
    """Base class for failures that abort the reduction of a single file."""


class DatasetNotFoundError(ReductionError, KeyError):
    def __init__(self, name: str, path: str | None = None) -> None:
        self.name = name
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(f"dataset not found{where}: {name}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0])


class BlockNotFoundError(ReductionError, KeyError):
    def __init__(self, block_id: int, count: int) -> None:
        self.block_id = block_id
        super().__init__(f"block id out of range 1..{count}: {block_id}")

    def __str__(self) -> str:
        return str(self.args[0])


class ClosedResourceError(ReductionError):
    pass


class UnsupportedDatatypeError(ReductionError, TypeError):
    pass


class MalformedRelationError(ReductionError, ValueError):
    pass


class ReductionIOError(ReductionError, OSError):
    pass
