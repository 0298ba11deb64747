"""Exception types raised by the memory store."""


class MemoryStoreError(Exception):
    """Base class for memory store errors."""


class ConfigError(MemoryStoreError, ValueError):
    """Invalid or incomplete plugin configuration."""


class InvalidMemoryIdError(MemoryStoreError, ValueError):
    """A memory id was not a well-formed UUID."""

    def __init__(self, memory_id: str):
        super().__init__(f"Invalid memory ID format: {memory_id}")
        self.memory_id = memory_id


class InvalidRelationshipTypeError(MemoryStoreError, ValueError):
    """A relationship type outside the allowlist was about to reach a query."""

    def __init__(self, rel_type: str):
        super().__init__(f"Relationship type not allowed: {rel_type!r}")
        self.rel_type = rel_type


class LLMError(MemoryStoreError):
    """
    A chat-completion call failed or was aborted.

    Attributes:
        transient: True when the caller may retry (rate limit, gateway, timeout, abort)
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient
