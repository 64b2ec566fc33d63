from pkgutil import extend_path

__path__ = extend_path(__path__, __name__)

__all__ = [
    "Block",
    "BlockFace",
    "NodeType",
    "BlockTree",
    "StatisticalReducer",
    "MeanReducer",
    "MedianReducer",
    "ReducerType",
    "create_reducer",
    "StatisticalDatasetReducer",
    "FlashFile",
    "FlashWriter",
    "ReductionConfig",
    "ReductionProcess",
    "StandardReduce",
    "CompositeReduce",
    "parse_strategy",
    "BatchReport",
    "reduce_directory",
]


def __getattr__(name):
    if name in {"Block", "BlockFace", "NodeType"}:
        from .block import Block, BlockFace, NodeType

        return {"Block": Block, "BlockFace": BlockFace, "NodeType": NodeType}[name]
    if name == "BlockTree":
        from .tree import BlockTree

        return BlockTree
    if name in {"StatisticalReducer", "MeanReducer", "MedianReducer", "ReducerType", "create_reducer"}:
        from .reducers import MeanReducer, MedianReducer, ReducerType, StatisticalReducer, create_reducer

        return {
            "StatisticalReducer": StatisticalReducer,
            "MeanReducer": MeanReducer,
            "MedianReducer": MedianReducer,
            "ReducerType": ReducerType,
            "create_reducer": create_reducer,
        }[name]
    if name == "StatisticalDatasetReducer":
        from .dataset_reducer import StatisticalDatasetReducer

        return StatisticalDatasetReducer
    if name in {"FlashFile", "FlashWriter"}:
        from .flash import FlashFile, FlashWriter

        return FlashFile if name == "FlashFile" else FlashWriter
    if name in {
        "ReductionConfig",
        "ReductionProcess",
        "StandardReduce",
        "CompositeReduce",
        "parse_strategy",
    }:
        from .process import (
            CompositeReduce,
            ReductionConfig,
            ReductionProcess,
            StandardReduce,
            parse_strategy,
        )

        return {
            "ReductionConfig": ReductionConfig,
            "ReductionProcess": ReductionProcess,
            "StandardReduce": StandardReduce,
            "CompositeReduce": CompositeReduce,
            "parse_strategy": parse_strategy,
        }[name]
    if name in {"BatchReport", "reduce_directory"}:
        from .batch import BatchReport, reduce_directory

        return BatchReport if name == "BatchReport" else reduce_directory
    raise AttributeError(name)
