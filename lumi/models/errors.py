"""Error taxonomy for providers, tools and the execution loop."""


class LumiError(Exception):
    """Base class for runtime errors with a human-readable default message."""

    default_message = "An unexpected error occurred."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# Provider layer


class AIProviderError(LumiError):
    default_message = "The AI provider request failed."


class APIKeyNotFoundError(AIProviderError):
    def __init__(self, provider: str | None = None):
        name = provider or "the selected provider"
        super().__init__(f"API key not found for {name}. Add it to your environment to continue.")
        self.provider = provider


class InvalidResponseError(AIProviderError):
    default_message = "Unexpected response from the AI provider."


class RateLimitExceededError(AIProviderError):
    default_message = "Rate limit exceeded. Please try again later."


class ProviderNetworkError(AIProviderError):
    default_message = "Could not connect to the AI provider."


class ProviderRequestError(AIProviderError):
    """Any other non-2xx response or error event from the backend."""

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(detail or self.default_message)
        self.detail = detail
        self.status_code = status_code


# Tool layer


class ToolError(LumiError):
    default_message = "The tool failed."


class ToolFileNotFoundError(ToolError):
    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class InvalidURLError(ToolError):
    def __init__(self, url: str):
        super().__init__(f"Invalid URL: {url}")
        self.url = url


class CommandFailedError(ToolError):
    def __init__(self, detail: str):
        super().__init__(f"Command failed: {detail}")
        self.detail = detail


class PermissionDeniedError(ToolError):
    default_message = "Permission denied"


class NotImplementedToolError(ToolError):
    default_message = "Tool not yet implemented"


class InvalidToolArgumentsError(ToolError):
    def __init__(self, detail: str):
        super().__init__(f"Invalid arguments: {detail}")
        self.detail = detail


# Loop layer


class ExecutionError(LumiError):
    default_message = "Execution failed."


class AlreadyExecutingError(ExecutionError):
    default_message = "Another execution is already in progress"


class MaxIterationsReachedError(ExecutionError):
    def __init__(self, limit: int | None = None):
        message = "Maximum execution iterations reached"
        if limit is not None:
            message = f"{message} ({limit})"
        super().__init__(message)
        self.limit = limit


class ExecutionCancelledError(ExecutionError):
    default_message = "Execution was cancelled"


# Caller layer


class NotFoundError(LumiError):
    default_message = "Not found"


class AgentNotFoundError(NotFoundError):
    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class ConversationNotFoundError(NotFoundError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
