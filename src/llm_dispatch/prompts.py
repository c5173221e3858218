"""Prompt templates: lookup, rendering, versioning and usage statistics.

Usage:
    >>> service = PromptTemplateService(InMemoryTemplateRepository([template]))
    >>> prompt = service.render("summarize", {"text": article})
    >>> messages = prompt.to_messages()
"""

import logging
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any, List, Mapping, Optional, Tuple

from .errors import MissingVariablesError, TemplateNotFoundError, ValidationError
from .options import ChatOptions
from .templating import render as render_template_text
from .templating import required_variables
from .types import RenderedPrompt

if TYPE_CHECKING:
    from .repositories import TemplateRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptTemplate:
    """A reusable prompt with default generation parameters.

    Attributes:
        identifier: Lineage name shared by all versions
        version: Monotonically increasing per lineage, starting at 1
        parent_uid: uid of the version this one was derived from
        variant: Non-empty for A/B variants of a template
        usage_count, avg_response_time, avg_tokens_used, quality_score:
            Running statistics maintained by record_usage()
    """

    identifier: str
    user_prompt: str = ""
    system_prompt: str = ""
    uid: Optional[int] = None
    title: str = ""
    description: str = ""
    feature: str = ""
    version: int = 1
    parent_uid: Optional[int] = None
    variant: str = ""
    is_active: bool = True
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    tags: Tuple[str, ...] = ()
    usage_count: int = 0
    avg_response_time: int = 0
    avg_tokens_used: int = 0
    quality_score: float = 0.0

    def __post_init__(self):
        if not self.identifier:
            raise ValidationError("PromptTemplate.identifier cannot be empty")
        if self.version < 1:
            raise ValidationError("PromptTemplate.version must be at least 1")
        object.__setattr__(self, "tags", tuple(self.tags))

    @property
    def required_variables(self) -> List[str]:
        return required_variables(self.system_prompt, self.user_prompt)

    def with_overrides(self, **overrides: Any) -> "PromptTemplate":
        """Copy this template with named fields replaced.

        Raises:
            ValidationError: If an override names an unknown field
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValidationError(
                f"Unknown prompt template field(s): {', '.join(unknown)}"
            )
        return replace(self, **overrides)


class PromptTemplateService:
    """Render, version and track prompt templates from a repository."""

    def __init__(self, repository: "TemplateRepository"):
        self._repository = repository

    def get_prompt(self, identifier: str) -> PromptTemplate:
        """Return the active template for ``identifier``.

        Raises:
            TemplateNotFoundError: If no active template exists
        """
        template = self._repository.find_by_identifier(identifier)
        if template is None or not template.is_active:
            raise TemplateNotFoundError(f'Prompt template "{identifier}" not found')
        return template

    def render(
        self,
        identifier: str,
        variables: Optional[Mapping[str, Any]] = None,
        options: Optional[Any] = None,
    ) -> RenderedPrompt:
        """Render a stored template.

        Args:
            identifier: Template identifier
            variables: Values for the template placeholders
            options: ChatOptions or mapping overriding model, temperature,
                max_tokens and top_p; unset values fall back to the
                template defaults

        Raises:
            TemplateNotFoundError: If the template does not exist
            MissingVariablesError: Listing every required variable not supplied
        """
        return self.render_template(self.get_prompt(identifier), variables, options)

    def render_template(
        self,
        template: PromptTemplate,
        variables: Optional[Mapping[str, Any]] = None,
        options: Optional[Any] = None,
    ) -> RenderedPrompt:
        variables = dict(variables or {})
        missing = [name for name in template.required_variables if name not in variables]
        if missing:
            raise MissingVariablesError(template.identifier, missing)

        overrides = options.to_dict() if isinstance(options, ChatOptions) else dict(options or {})

        def pick(name: str, default: Any) -> Any:
            value = overrides.get(name)
            return default if value is None else value

        return RenderedPrompt(
            system_prompt=render_template_text(template.system_prompt, variables).strip(),
            user_prompt=render_template_text(template.user_prompt, variables).strip(),
            model=pick("model", template.model),
            temperature=pick("temperature", template.temperature),
            max_tokens=pick("max_tokens", template.max_tokens),
            top_p=pick("top_p", template.top_p),
            metadata={
                "template_id": template.uid,
                "template_identifier": template.identifier,
                "version": template.version,
                "variant": template.variant or None,
            },
        )

    def create_version(self, identifier: str, **overrides: Any) -> PromptTemplate:
        """Derive and save a new version of a template.

        All fields are copied from the latest version, the version counter is
        incremented, the parent link set, and then ``overrides`` applied.

        Raises:
            TemplateNotFoundError: If the template does not exist
            ValidationError: If an override names an unknown field
        """
        base = self.get_prompt(identifier)
        derived = base.with_overrides(
            uid=None,
            version=base.version + 1,
            parent_uid=base.uid,
        ).with_overrides(**overrides)
        saved = self._repository.save(derived)
        logger.debug(f"Created version {saved.version} of prompt template '{identifier}'")
        return saved

    def get_variant(self, identifier: str, variant: str) -> PromptTemplate:
        template = self._repository.find_variant(identifier, variant)
        if template is None:
            raise TemplateNotFoundError(
                f'Variant "{variant}" of template "{identifier}" not found'
            )
        return template

    def record_usage(
        self,
        identifier: str,
        response_time_ms: int,
        tokens_used: int,
        quality_score: float,
    ) -> PromptTemplate:
        """Fold one observation into the template's running averages.

        Each mean is updated as ``(old * count + sample) / (count + 1)``.
        Latency and tokens are rounded to integers, quality to two places.
        """
        template = self.get_prompt(identifier)
        count = template.usage_count
        new_count = count + 1

        def running(old: float, sample: float) -> float:
            return (old * count + sample) / new_count

        updated = template.with_overrides(
            usage_count=new_count,
            avg_response_time=int(round(running(template.avg_response_time, response_time_ms))),
            avg_tokens_used=int(round(running(template.avg_tokens_used, tokens_used))),
            quality_score=round(running(template.quality_score, quality_score), 2),
        )
        return self._repository.save(updated)

    def templates_for_feature(self, feature: str) -> List[PromptTemplate]:
        return self._repository.find_by_feature(feature)
