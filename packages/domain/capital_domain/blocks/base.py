"""Base classes for computation blocks.

Blocks turn ledger records into pandas DataFrames:
- Block abstract base class (declares inputs/outputs, implements execute)
- BlockContext, the keyed scratch space blocks read from and write to
- BlockExecutor, which orders blocks by their data dependencies and runs them
- topological_sort (Kahn's algorithm)
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# =============================================================================
# Block Context
# =============================================================================

@dataclass
class BlockContext:
    """Keyed values shared between blocks.

    Example:
        context = BlockContext()
        context.set("allocations", allocations)
        context.set("deals", deals_by_id)

        AllocationMetricsBlock().execute(context)
        metrics_df = context.get("allocation_metrics")
    """

    _data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        """Get value from context.

        Raises:
            KeyError: If key not found in context
        """
        if key not in self._data:
            raise KeyError(f"Key '{key}' not found in context. Available keys: {list(self._data.keys())}")
        return self._data[key]

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def has(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> List[str]:
        return list(self._data.keys())


# =============================================================================
# Block Base Class
# =============================================================================

class Block(ABC):
    """A computation unit with declared inputs and outputs.

    Subclass example:
        class PortfolioWeightsBlock(Block):
            def inputs(self) -> List[str]:
                return ["allocation_metrics", "capital_view"]

            def outputs(self) -> List[str]:
                return ["portfolio_weights"]

            def execute(self, context: BlockContext) -> None:
                metrics_df = context.get("allocation_metrics")
                context.set("portfolio_weights", weights(metrics_df))
    """

    @abstractmethod
    def inputs(self) -> List[str]:
        """Context keys this block reads."""
        pass

    @abstractmethod
    def outputs(self) -> List[str]:
        """Context keys this block writes."""
        pass

    @abstractmethod
    def execute(self, context: BlockContext) -> None:
        """Read inputs from context, compute, write outputs to context.

        Raises:
            KeyError: If required inputs not available in context
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(inputs={self.inputs()}, outputs={self.outputs()})"


# =============================================================================
# Dependency Resolution
# =============================================================================

class CircularDependencyError(Exception):
    """Raised when blocks depend on each other in a cycle."""
    pass


def topological_sort(blocks: List[Block]) -> List[Block]:
    """Order blocks so every producer runs before its consumers.

    Inputs no block produces are expected in the initial context. Blocks
    with no mutual dependency keep their given order.

    Raises:
        ValueError: Two blocks declare the same output
        CircularDependencyError: Blocks depend on each other in a cycle

    Example:
        AllocationMetricsBlock.outputs() = ["allocation_metrics"]
        PortfolioWeightsBlock.inputs()   = ["allocation_metrics", "capital_view"]

        topological_sort([weights_block, metrics_block])
        -> [metrics_block, weights_block]
    """
    producers: Dict[str, Block] = {}
    for block in blocks:
        for key in block.outputs():
            if key in producers:
                raise ValueError(
                    f"Multiple blocks produce '{key}': {producers[key]} and {block}"
                )
            producers[key] = block

    pending: Dict[int, int] = {id(block): 0 for block in blocks}
    consumers: Dict[int, List[Block]] = {id(block): [] for block in blocks}
    for block in blocks:
        for key in block.inputs():
            producer = producers.get(key)
            if producer is not None:
                consumers[id(producer)].append(block)
                pending[id(block)] += 1

    ready = deque(block for block in blocks if pending[id(block)] == 0)
    ordered: List[Block] = []
    while ready:
        current = ready.popleft()
        ordered.append(current)
        for consumer in consumers[id(current)]:
            pending[id(consumer)] -= 1
            if pending[id(consumer)] == 0:
                ready.append(consumer)

    if len(ordered) != len(blocks):
        stuck = [block for block in blocks if pending[id(block)] > 0]
        raise CircularDependencyError(f"Circular dependency detected among blocks: {stuck}")

    return ordered


# =============================================================================
# Block Executor
# =============================================================================

class BlockExecutor:
    """Runs blocks in dependency order, checking inputs and outputs.

    Example:
        executor = BlockExecutor([ReturnsBlock(), AllocationMetricsBlock()])
        context = BlockContext()
        context.set("allocations", allocations)
        context.set("deals", deals_by_id)

        executor.execute(context)
        summary_df = context.get("returns_summary")
    """

    def __init__(self, blocks: List[Block]):
        self.blocks = blocks
        self._order: Optional[List[Block]] = None

    def execute(self, context: BlockContext) -> BlockContext:
        """Execute all blocks.

        Raises:
            CircularDependencyError: If blocks have circular dependencies
            KeyError: If a block's input is missing from context
            ValueError: If a block did not write a declared output
        """
        if self._order is None:
            self._order = topological_sort(self.blocks)

        for block in self._order:
            missing = [key for key in block.inputs() if not context.has(key)]
            if missing:
                raise KeyError(
                    f"Block {block} requires inputs {missing} but they are not in context. "
                    f"Available keys: {context.keys()}"
                )

            block.execute(context)

            unwritten = [key for key in block.outputs() if not context.has(key)]
            if unwritten:
                raise ValueError(f"Block {block} declared outputs {unwritten} but didn't write them")

        return context
