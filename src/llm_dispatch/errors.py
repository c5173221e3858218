"""Error taxonomy for the dispatch layer.

Every error carries a stable machine-checkable ``code`` plus a human message.
Validation errors are raised eagerly, before any I/O. Provider and transport
errors propagate to the caller unmodified. Cache errors never leave the cache.
"""

from typing import Any, Dict, Iterable, List, Optional


class DispatchError(Exception):
    """Base class for all dispatch-layer errors."""

    code = "dispatch_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a boundary-safe dict (no stack trace)."""
        return {"code": self.code, "message": self.message}


class ProviderNotFoundError(DispatchError):
    """No provider matches the requested identifier and no default is set."""

    code = "provider_not_found"


class ProviderConfigurationError(DispatchError):
    """A provider, adapter class or configuration cannot be used."""

    code = "provider_configuration"


class UnsupportedFeatureError(DispatchError):
    """The resolved provider lacks the capability an operation needs."""

    code = "unsupported_feature"


class ValidationError(DispatchError, ValueError):
    """Out-of-range or malformed parameters."""

    code = "validation_error"


class TemplateNotFoundError(DispatchError):
    """No active prompt template with the requested identifier."""

    code = "template_not_found"


class TemplateSyntaxError(DispatchError):
    """Unbalanced or malformed template block."""

    code = "template_syntax"


class MissingVariablesError(DispatchError):
    """One or more required template variables were not supplied."""

    code = "missing_variables"

    def __init__(self, template: str, missing: Iterable[str]):
        self.template = template
        self.missing: List[str] = list(missing)
        super().__init__(
            f'Missing required variables for template "{template}": '
            + ", ".join(self.missing)
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["missing"] = list(self.missing)
        return data


class ProviderResponseError(DispatchError):
    """The provider rejected a request (4xx)."""

    code = "provider_response"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderConnectionError(DispatchError):
    """The provider could not be reached or failed server-side (5xx)."""

    code = "provider_connection"
