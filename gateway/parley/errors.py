"""Error kinds raised by the generation pipeline."""


class ParleyError(Exception):
    """Base class for gateway errors."""


class CatalogUnavailable(ParleyError):
    """Registry could not be reached; callers fall back to the default model."""


class InvalidDescriptor(ParleyError):
    """A model descriptor failed schema validation."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class UnknownModel(ParleyError):
    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' not found")
        self.model_id = model_id


class BackendFailure(ParleyError):
    """Generation backend returned an error or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MisconfiguredWeights(AssertionError):
    """Endpoint weights sum to zero; schema validation should prevent this."""
