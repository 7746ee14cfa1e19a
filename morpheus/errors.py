"""
Morpheus Errors
===============

Exception taxonomy for the morph engine.

- ConfigurationError: raised while registering morphs or building pipelines
- TransformError: raised while applying a morph or pipeline

Timeouts are not native to the engine; callers wrap ``apply_async`` in
``asyncio.wait_for`` (or similar) themselves.
"""

from typing import Any, Optional


class MorpheusError(Exception):
    """Base class for all engine errors."""

    pass


class ConfigurationError(MorpheusError):
    """Raised for invalid registrations, metadata or pipeline definitions."""

    pass


class TransformError(MorpheusError):
    """
    Raised when a morph fails while transforming its input.

    Attributes:
        morph_name: Name (or stage label) of the morph that failed
        cause: The original exception raised by the transformation
        context: The context in effect when the failure happened
    """

    def __init__(
        self, morph_name: str, cause: BaseException, context: Optional[Any] = None
    ):
        self.morph_name = morph_name
        self.cause = cause
        self.context = context
        super().__init__(
            f"Morph '{morph_name}' failed: {type(cause).__name__}: {cause}"
        )

    def __reduce__(self):
        return (type(self), (self.morph_name, self.cause, self.context))
