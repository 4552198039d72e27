"""
Error types raised by the workflow engine.

Three classes of failure matter to callers:
- Validation errors: raised while serializing a graph, always fatal to starting a run
- Operation errors: a block's invocation failed; recorded and routed or propagated
- Infrastructure errors: pause or log persistence failed; logged, non-fatal by default
"""


class BlockflowError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(BlockflowError):
    """A workflow graph failed validation.

    Carries the identity of the offending block so a caller can highlight it.
    """

    def __init__(
        self,
        message: str,
        block_id: str | None = None,
        block_type: str | None = None,
        block_name: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.block_id = block_id
        self.block_type = block_type
        self.block_name = block_name

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "block_id": self.block_id,
            "block_type": self.block_type,
            "block_name": self.block_name,
        }


class TriggerResolutionError(BlockflowError):
    """No unique start block could be resolved for an invocation."""

    def __init__(self, message: str, block_id: str | None = None):
        super().__init__(message)
        self.block_id = block_id


class ReferenceResolutionError(BlockflowError):
    """A reference token in a block input could not be resolved."""

    def __init__(self, message: str, reference: str = ""):
        super().__init__(message)
        self.reference = reference


class ExpressionError(BlockflowError):
    """A condition expression is invalid or failed to evaluate."""


class BlockExecutionError(BlockflowError):
    """A block operation failed and no error edge handles it."""

    def __init__(self, message: str, block_id: str, block_name: str = "", block_type: str = ""):
        super().__init__(message)
        self.block_id = block_id
        self.block_name = block_name
        self.block_type = block_type


class DebugSessionError(BlockflowError):
    """A debug step was requested without the state needed to run it.

    Drivers should reset the session instead of retrying.
    """


class PausePersistenceError(BlockflowError):
    """A paused execution could not be written to durable storage."""

    def __init__(self, message: str, execution_id: str = ""):
        super().__init__(message)
        self.execution_id = execution_id
