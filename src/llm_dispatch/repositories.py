"""Collaborator protocols for record storage and secret lookup.

Persistence and secret storage live outside this package. The protocols are
runtime_checkable, so any object with the right methods can be plugged in:

    >>> repo = InMemoryModelRepository([model_a, model_b])
    >>> isinstance(repo, ModelRepository)
    True

In-memory implementations are provided for embedding and tests, and
EnvSecretResolver maps credential references to environment variables.
"""

import os
import threading
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from dotenv import load_dotenv

from .records import ModelRecord, ProviderRecord
from .prompts import PromptTemplate


@runtime_checkable
class SecretResolver(Protocol):
    """Exchanges an opaque credential reference for the secret it names."""

    def retrieve(self, reference: str) -> Optional[str]:
        """Return the secret, or None if the reference is unknown."""
        ...


@runtime_checkable
class ProviderRepository(Protocol):
    """Read access to stored provider records."""

    def find_active(self) -> List[ProviderRecord]:
        ...

    def find_by_identifier(self, identifier: str) -> Optional[ProviderRecord]:
        ...


@runtime_checkable
class ModelRepository(Protocol):
    """Read access to stored model records."""

    def find_active(self) -> List[ModelRecord]:
        """Return every active model, with its provider attached."""
        ...

    def find_by_identifier(self, identifier: str) -> Optional[ModelRecord]:
        ...


@runtime_checkable
class TemplateRepository(Protocol):
    """Storage for prompt templates."""

    def find_by_identifier(self, identifier: str) -> Optional[PromptTemplate]:
        """Return the latest active version of a template."""
        ...

    def find_variant(self, identifier: str, variant: str) -> Optional[PromptTemplate]:
        ...

    def find_by_feature(self, feature: str) -> List[PromptTemplate]:
        ...

    def save(self, template: PromptTemplate) -> PromptTemplate:
        """Persist a template and return it with its uid assigned."""
        ...


# =============================================================================
# In-memory implementations
# =============================================================================


class InMemoryProviderRepository:
    """Provider records held in a dict keyed by identifier."""

    def __init__(self, providers: Iterable[ProviderRecord] = ()):
        self._providers: Dict[str, ProviderRecord] = {p.identifier: p for p in providers}

    def add(self, provider: ProviderRecord) -> None:
        self._providers[provider.identifier] = provider

    def find_active(self) -> List[ProviderRecord]:
        return [p for p in self._providers.values() if p.is_active]

    def find_by_identifier(self, identifier: str) -> Optional[ProviderRecord]:
        return self._providers.get(identifier)


class InMemoryModelRepository:
    """Model records held in insertion order.

    Models whose provider is inactive are not reported as active.
    """

    def __init__(self, models: Iterable[ModelRecord] = ()):
        self._models: Dict[str, ModelRecord] = {m.identifier: m for m in models}

    def add(self, model: ModelRecord) -> None:
        self._models[model.identifier] = model

    def find_active(self) -> List[ModelRecord]:
        return [
            m
            for m in self._models.values()
            if m.is_active and (m.provider is None or m.provider.is_active)
        ]

    def find_by_identifier(self, identifier: str) -> Optional[ModelRecord]:
        return self._models.get(identifier)


class InMemoryTemplateRepository:
    """Prompt templates with auto-assigned uids.

    ``find_by_identifier`` returns the active record with the highest
    version, so a saved new version supersedes its parent.
    """

    def __init__(self, templates: Iterable[PromptTemplate] = ()):
        self._templates: Dict[int, PromptTemplate] = {}
        self._next_uid = 1
        self._lock = threading.Lock()
        for template in templates:
            self.save(template)

    def save(self, template: PromptTemplate) -> PromptTemplate:
        with self._lock:
            if template.uid is None:
                template = template.with_overrides(uid=self._next_uid)
            self._next_uid = max(self._next_uid, template.uid + 1)
            self._templates[template.uid] = template
        return template

    def all(self) -> List[PromptTemplate]:
        return list(self._templates.values())

    def _active(self, identifier: str) -> List[PromptTemplate]:
        return [
            t for t in self._templates.values()
            if t.identifier == identifier and t.is_active
        ]

    def find_by_identifier(self, identifier: str) -> Optional[PromptTemplate]:
        candidates = [t for t in self._active(identifier) if not t.variant]
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.version)

    def find_variant(self, identifier: str, variant: str) -> Optional[PromptTemplate]:
        candidates = [t for t in self._active(identifier) if t.variant == variant]
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.version)

    def find_by_feature(self, feature: str) -> List[PromptTemplate]:
        latest: Dict[str, PromptTemplate] = {}
        for template in self._templates.values():
            if template.feature != feature or not template.is_active or template.variant:
                continue
            current = latest.get(template.identifier)
            if current is None or template.version > current.version:
                latest[template.identifier] = template
        return sorted(latest.values(), key=lambda t: t.identifier)


# =============================================================================
# Secret resolution
# =============================================================================


class EnvSecretResolver:
    """Resolve credential references from environment variables.

    A reference is used as the variable name verbatim; if that is unset, the
    upper-cased reference with ``-`` and ``.`` replaced by ``_`` is tried.
    A ``.env`` file in the working directory is loaded on construction.

    Args:
        overrides: Explicit reference -> secret mapping consulted first
        load_env_file: Whether to load ``.env`` (default True)
    """

    def __init__(self, overrides: Optional[Dict[str, str]] = None, load_env_file: bool = True):
        self._overrides = dict(overrides or {})
        if load_env_file:
            load_dotenv()

    def retrieve(self, reference: str) -> Optional[str]:
        if not reference:
            return None
        if reference in self._overrides:
            return self._overrides[reference]
        value = os.environ.get(reference)
        if value:
            return value
        normalized = reference.upper().replace("-", "_").replace(".", "_")
        return os.environ.get(normalized) or None
