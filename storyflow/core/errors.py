"""Exception taxonomy for the workflow engine.

Kept in its own module so the schema, resolver, handlers and executor can all
raise the same types without importing each other.
"""


class StoryflowError(Exception):
    """Base class for engine errors."""

    pass


class StructuralError(StoryflowError):
    """The node list cannot be executed (bad block pairing, unknown type, ...).

    Raised before the run starts; the execution never reaches ``running``.
    """

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid workflow structure: " + "; ".join(self.problems))


class NodeExecutionError(StoryflowError):
    """A single node failed. Always carries the causing node id."""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Node '{node_id}' failed: {reason}")


class LoopMaxExceededError(NodeExecutionError):
    """A loop still wanted to iterate after reaching the workflow ceiling."""

    code = "loop_max_exceeded"

    def __init__(self, node_id: str, ceiling: int):
        self.ceiling = ceiling
        super().__init__(
            node_id,
            f"loop_max_exceeded: loop did not finish within the ceiling of {ceiling} iterations",
        )


class ExecutionCancelled(StoryflowError):
    """Cooperative cancellation observed at a node or chunk boundary."""

    pass


class ExecutionTimedOut(StoryflowError):
    """Wall-clock budget of the execution was exhausted."""

    pass


class InvalidStateError(StoryflowError):
    """Operation not allowed in the executor's current state."""

    pass
