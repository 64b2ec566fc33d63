from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Sequence

import numpy as np


class NodeType(IntEnum):
    LEAF = 1
    PARENT = 2
    ANCESTOR = 3


class BlockFace(Enum):
    """The six faces of a block, in the order of the neighbor columns of `gid`."""

    LEFT = ((-1, 0, 0), 0)
    RIGHT = ((1, 0, 0), 1)
    BOTTOM = ((0, -1, 0), 2)
    TOP = ((0, 1, 0), 3)
    BACK = ((0, 0, -1), 4)
    FRONT = ((0, 0, 1), 5)

    @property
    def direction(self) -> tuple[int, int, int]:
        return self.value[0]

    @property
    def index(self) -> int:
        return self.value[1]


NUM_FACES = len(BlockFace)


@dataclass(frozen=True)
class Block:
    id: int
    refine_level: int = 0
    node_type: NodeType | int = 0
    block_size: float = 0.0
    coordinates: tuple[float, float, float] = (0.0, 0.0, 0.0)
    bounding_box: tuple[float, float, float] = (0.0, 0.0, 0.0)
    which_child: int | None = None
    neighbor_ids: tuple[int | None, ...] = field(default=(None,) * NUM_FACES)
    bflags: int = 0

    def __post_init__(self) -> None:
        if self.id < 1:
            raise ValueError(f"block ids are 1-based, got {self.id}")
        if len(self.neighbor_ids) != NUM_FACES:
            raise ValueError(f"expected {NUM_FACES} neighbor slots, got {len(self.neighbor_ids)}")

    def neighbor_id(self, face: BlockFace) -> int | None:
        return self.neighbor_ids[face.index]

    @property
    def is_leaf(self) -> bool:
        return self.node_type == NodeType.LEAF

    @property
    def is_root(self) -> bool:
        return self.which_child is None


def _node_type(raw: int) -> NodeType | int:
    try:
        return NodeType(raw)
    except ValueError:
        return raw


def _neighbor_slots(row: Sequence[Any]) -> tuple[int | None, ...]:
    return tuple(int(n) if int(n) > 0 else None for n in row)


def _xyz(row: Any) -> tuple[float, float, float]:
    values = [float(v) for v in np.asarray(row, dtype=np.float64).reshape(-1)[:3]]
    while len(values) < 3:
        values.append(0.0)
    return values[0], values[1], values[2]


def build_blocks(
    count: int,
    *,
    refine_level: Sequence[Any] | None = None,
    node_type: Sequence[Any] | None = None,
    block_size: Any | None = None,
    coordinates: Any | None = None,
    bounding_box: Any | None = None,
    which_child: Sequence[Any] | None = None,
    neighbors: Any | None = None,
    bflags: Any | None = None,
) -> list[Block]:
    """Assemble fully populated blocks from per-block attribute tables.

    Every table is indexed by ``id - 1``. ``block_size`` may hold one edge
    length per block or a row per block (the first column is used, blocks are
    cubes). ``bounding_box`` may hold ``(lo, hi)`` pairs per axis, in which
    case the half-extent is derived from them. A ``which_child`` value below
    one marks a root; stored values are 1-based as in FLASH files and are
    converted to the 0-based octant index.
    """

    if count < 0:
        raise ValueError("block count must be non-negative")

    if block_size is not None:
        block_size = np.asarray(block_size, dtype=np.float64)
        if block_size.ndim > 1:
            block_size = block_size[:, 0]
    if bounding_box is not None:
        bounding_box = np.asarray(bounding_box, dtype=np.float64)
        if bounding_box.ndim == 3:
            bounding_box = 0.5 * (bounding_box[..., 1] - bounding_box[..., 0])
    if neighbors is not None:
        neighbors = np.asarray(neighbors, dtype=np.int64)
        if neighbors.shape[1] < NUM_FACES:
            # Lower-dimensional runs store fewer neighbor columns.
            pad = np.full((neighbors.shape[0], NUM_FACES - neighbors.shape[1]), -1, dtype=np.int64)
            neighbors = np.concatenate([neighbors, pad], axis=1)

    blocks: list[Block] = []
    for idx in range(count):
        child = int(which_child[idx]) if which_child is not None else 0
        blocks.append(
            Block(
                id=idx + 1,
                refine_level=int(refine_level[idx]) if refine_level is not None else 0,
                node_type=_node_type(int(node_type[idx])) if node_type is not None else 0,
                block_size=float(block_size[idx]) if block_size is not None else 0.0,
                coordinates=_xyz(coordinates[idx]) if coordinates is not None else (0.0, 0.0, 0.0),
                bounding_box=_xyz(bounding_box[idx]) if bounding_box is not None else (0.0, 0.0, 0.0),
                which_child=child - 1 if child >= 1 else None,
                neighbor_ids=(
                    _neighbor_slots(neighbors[idx, :NUM_FACES])
                    if neighbors is not None
                    else (None,) * NUM_FACES
                ),
                bflags=int(np.asarray(bflags[idx]).reshape(-1)[0]) if bflags is not None else 0,
            )
        )
    return blocks
