class FlowRuntimeError(Exception):
    """Base class for errors raised by the flow runtime."""


class WorkspaceNotFoundError(FlowRuntimeError):
    pass


class TriggerNotFoundError(FlowRuntimeError):
    """No keyword or default webhook trigger resolved, or its start handle is unconnected."""


class SessionNotFoundError(FlowRuntimeError):
    pass


class ChannelSendError(FlowRuntimeError):
    """A message could not be delivered; aborts the current engine step."""

    def __init__(self, message: str, node_id: str = None):
        super().__init__(message)
        self.node_id = node_id


class MemoryConfigurationError(FlowRuntimeError):
    """Invalid memory store configuration (unknown provider, missing connection string)."""


class SandboxViolationError(FlowRuntimeError):
    """User code uses a construct the script sandbox does not allow."""


class SandboxTimeoutError(FlowRuntimeError):
    pass


class GenerationError(FlowRuntimeError):
    """The LLM generation capability failed."""


class ScriptExecutionError(FlowRuntimeError):
    """User code raised while running inside the script sandbox."""
