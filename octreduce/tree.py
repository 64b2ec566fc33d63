from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

import numpy as np

from .block import Block, BlockFace
from .errors import BlockNotFoundError, MalformedRelationError

RELATION_WIDTH = 9
NUM_CHILDREN = 8


@dataclass
class _Node:
    block: Block
    parent: _Node | None = None
    children: list[_Node] = field(default_factory=list)


class BlockTree:
    """Oct-tree over the blocks of one AMR snapshot.

    Every node has either no children or exactly eight, stored in octant
    order. The tree is built once and never modified.
    """

    def __init__(self, blocks: Sequence[Block], relations: np.ndarray) -> None:
        if not blocks:
            raise MalformedRelationError("block tree needs at least one block")
        for idx, block in enumerate(blocks):
            if block.id != idx + 1:
                raise MalformedRelationError(
                    f"block ids must be contiguous from 1; position {idx} holds id {block.id}"
                )
        if relations.shape != (len(blocks), RELATION_WIDTH):
            raise MalformedRelationError(
                f"relation table has shape {relations.shape}, expected ({len(blocks)}, {RELATION_WIDTH})"
            )

        self._blocks = list(blocks)
        self._nodes = [_Node(block) for block in self._blocks]
        self._construct(relations)

    @classmethod
    def from_relations(cls, relations: Any, blocks: Sequence[Block] | None = None) -> "BlockTree":
        """Build a tree from 9 ids per block: the parent id, then 8 child ids.

        Negative ids mean "none". ``relations`` may be flat or already shaped
        ``(N, 9)``. Without ``blocks``, bare blocks holding only their id are
        created.
        """

        arr = np.asarray(relations, dtype=np.int64)
        if arr.ndim == 2 and arr.shape[1] == RELATION_WIDTH:
            arr = arr.reshape(-1)
        if arr.ndim != 1:
            raise MalformedRelationError(f"relation data must be flat or (N, 9), got shape {arr.shape}")
        if arr.size == 0 or arr.size % RELATION_WIDTH != 0:
            raise MalformedRelationError(
                f"relation data length {arr.size} is not a positive multiple of {RELATION_WIDTH}"
            )

        count = arr.size // RELATION_WIDTH
        if blocks is None:
            blocks = [Block(id=i + 1) for i in range(count)]
        elif len(blocks) != count:
            raise MalformedRelationError(
                f"relation data describes {count} blocks but {len(blocks)} blocks were given"
            )
        return cls(blocks, arr.reshape(count, RELATION_WIDTH))

    def _node(self, block_id: int) -> _Node:
        if block_id < 1 or block_id > len(self._nodes):
            raise BlockNotFoundError(block_id, len(self._nodes))
        return self._nodes[block_id - 1]

    def _construct(self, relations: np.ndarray) -> None:
        count = len(self._nodes)
        rows = relations.tolist()
        claimed: set[int] = set()
        for idx, row in enumerate(rows):
            node = self._nodes[idx]
            parent_id = int(row[0])
            if parent_id >= 0:
                if not 1 <= parent_id <= count:
                    raise MalformedRelationError(f"block {idx + 1} has out-of-range parent id {parent_id}")
                node.parent = self._nodes[parent_id - 1]

            for child_id in row[1:]:
                if child_id < 0:
                    break
                if not 1 <= child_id <= count:
                    raise MalformedRelationError(f"block {idx + 1} has out-of-range child id {child_id}")
                if int(rows[child_id - 1][0]) != idx + 1:
                    raise MalformedRelationError(
                        f"block {idx + 1} lists child {child_id}, whose parent is {rows[child_id - 1][0]}"
                    )
                if child_id in claimed:
                    raise MalformedRelationError(f"block {child_id} is listed as a child more than once")
                claimed.add(child_id)
                node.children.append(self._nodes[child_id - 1])

            if node.children and len(node.children) != NUM_CHILDREN:
                raise MalformedRelationError(
                    f"block {idx + 1} has {len(node.children)} children; expected 0 or {NUM_CHILDREN}"
                )

        if self._nodes[0].parent is not None:
            raise MalformedRelationError("block 1 must be a root")

        # With unique parents the walk visits each reachable block once; the
        # rest sit on a parent cycle or behind a parent that does not list them.
        self._order = self._walk()
        if len(self._order) != count:
            missing = sorted({n.block.id for n in self._nodes} - {b.id for b in self._order})
            raise MalformedRelationError(f"blocks not reachable from any root: {missing[:10]}")

    def _walk(self) -> list[Block]:
        out: list[Block] = []
        queue: deque[_Node] = deque(node for node in self._nodes if node.parent is None)
        while queue:
            node = queue.popleft()
            out.append(node.block)
            queue.extend(node.children)
        return out

    @property
    def root(self) -> Block:
        return self._nodes[0].block

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)

    def get(self, block_id: int) -> Block:
        return self._node(block_id).block

    def all_blocks(self) -> list[Block]:
        return list(self._blocks)

    def parent_of(self, block: Block | int) -> Block | None:
        block_id = block.id if isinstance(block, Block) else int(block)
        parent = self._node(block_id).parent
        return parent.block if parent is not None else None

    def children_of(self, block: Block | int) -> list[Block]:
        block_id = block.id if isinstance(block, Block) else int(block)
        return [child.block for child in self._node(block_id).children]

    def leaves(self) -> list[Block]:
        return [node.block for node in self._nodes if not node.children]

    def neighbor_of(self, block: Block, face: BlockFace) -> Block | None:
        neighbor_id = block.neighbor_id(face)
        if neighbor_id is None or neighbor_id > len(self._nodes):
            return None
        return self._nodes[neighbor_id - 1].block

    def roots(self) -> list[Block]:
        return [node.block for node in self._nodes if node.parent is None]

    def level_order(self) -> list[Block]:
        """Breadth-first walk from the roots; the block with id 1 comes first."""

        return list(self._order)
