"""High-level completion, embedding, vision and translation helpers.

Each service wraps one Dispatcher operation with task-specific prompts and
option presets. Provider resolution and capability checks stay in the
dispatcher.
"""

import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import urlparse

from .errors import ValidationError
from .options import (
    ChatOptions,
    EmbeddingOptions,
    OptionsLike,
    VisionOptions,
    coerce_options,
)
from .types import (
    CompletionResponse,
    EmbeddingResponse,
    TranslationResult,
    VisionResponse,
)

logger = logging.getLogger(__name__)

MARKDOWN_INSTRUCTION = "Format your response in clean, well-structured Markdown."


def _as_dict(options: OptionsLike, options_class) -> Dict[str, Any]:
    """Validated options as a plain dict, keeping unknown keys of a mapping."""
    data = coerce_options(options, options_class).to_dict()
    if isinstance(options, Mapping):
        data = {**options, **data}
    return data


class CompletionService:
    """Single-prompt completions with format and sampling presets.

    Args:
        dispatcher: Dispatcher used for the underlying chat call
    """

    def __init__(self, dispatcher):
        self._dispatcher = dispatcher

    async def complete(self, prompt: str, options: OptionsLike = None) -> CompletionResponse:
        """Complete a prompt.

        A ``system_prompt`` option becomes a leading system message,
        ``markdown`` output is requested as plain text and ``stop_sequences``
        is sent as ``stop``.
        """
        opts = _as_dict(options, ChatOptions)

        messages: List[Dict[str, Any]] = []
        system_prompt = opts.pop("system_prompt", None)
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        if opts.get("response_format") == "markdown":
            opts["response_format"] = "text"
        if "stop_sequences" in opts:
            opts["stop"] = opts.pop("stop_sequences")

        return await self._dispatcher.chat(messages, opts)

    async def complete_json(self, prompt: str, options: OptionsLike = None) -> Any:
        """Complete in JSON mode and return the decoded value.

        Raises:
            ValidationError: If the response is not valid JSON
        """
        opts = _as_dict(options, ChatOptions)
        opts["response_format"] = "json"
        response = await self.complete(prompt, opts)
        try:
            return json.loads(response.content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to decode JSON response: {e}") from e

    async def complete_markdown(self, prompt: str, options: OptionsLike = None) -> str:
        opts = _as_dict(options, ChatOptions)
        opts["response_format"] = "markdown"
        system_prompt = opts.get("system_prompt") or ""
        opts["system_prompt"] = f"{system_prompt}\n\n{MARKDOWN_INSTRUCTION}".strip()
        response = await self.complete(prompt, opts)
        return response.content

    async def complete_factual(self, prompt: str, options: OptionsLike = None) -> CompletionResponse:
        """Low-temperature completion; explicit options win over the preset."""
        opts = _as_dict(options, ChatOptions)
        opts.setdefault("temperature", 0.2)
        opts.setdefault("top_p", 0.9)
        return await self.complete(prompt, opts)

    async def complete_creative(self, prompt: str, options: OptionsLike = None) -> CompletionResponse:
        opts = _as_dict(options, ChatOptions)
        opts.setdefault("temperature", 1.2)
        opts.setdefault("top_p", 1.0)
        opts.setdefault("presence_penalty", 0.6)
        return await self.complete(prompt, opts)


class EmbeddingService:
    """Embeddings plus vector similarity utilities.

    Caching is handled by the dispatcher's ``embed`` operation.
    """

    def __init__(self, dispatcher):
        self._dispatcher = dispatcher

    async def embed(self, text: str, options: OptionsLike = None) -> List[float]:
        """Embedding vector for a single text."""
        response = await self.embed_full(text, options)
        return response.vector

    async def embed_full(self, text: str, options: OptionsLike = None) -> EmbeddingResponse:
        if not text:
            raise ValidationError("Text cannot be empty")
        return await self._dispatcher.embed(text, _as_dict(options, EmbeddingOptions))

    async def embed_batch(
        self, texts: Sequence[str], options: OptionsLike = None
    ) -> List[List[float]]:
        """Embed several texts in one request; an empty batch makes no call."""
        if not texts:
            return []
        response = await self._dispatcher.embed(list(texts), _as_dict(options, EmbeddingOptions))
        return response.embeddings

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        return EmbeddingResponse.cosine_similarity(a, b)

    def find_most_similar(
        self,
        query: Sequence[float],
        candidates: Sequence[Sequence[float]],
        top_k: int = 5,
    ) -> List[Dict[str, Any]]:
        """Rank candidate vectors by similarity to ``query``.

        Returns:
            Up to ``top_k`` dicts of ``{"index", "similarity"}``, most similar first
        """
        scored = [
            {"index": index, "similarity": self.cosine_similarity(query, candidate)}
            for index, candidate in enumerate(candidates)
        ]
        scored.sort(key=lambda item: item["similarity"], reverse=True)
        return scored[:top_k]

    def pairwise_similarities(self, vectors: Sequence[Sequence[float]]) -> List[List[float]]:
        """Symmetric similarity matrix with 1.0 on the diagonal."""
        count = len(vectors)
        matrix = [[1.0] * count for _ in range(count)]
        for i in range(count):
            for j in range(i + 1, count):
                similarity = self.cosine_similarity(vectors[i], vectors[j])
                matrix[i][j] = similarity
                matrix[j][i] = similarity
        return matrix

    @staticmethod
    def normalize(vector: Sequence[float]) -> List[float]:
        return EmbeddingResponse.normalize_vector(vector)


# =============================================================================
# Vision
# =============================================================================

ALT_TEXT_PROMPT = (
    "Generate a concise alt text for this image, under 125 characters, focused on "
    "essential information for screen readers. Be descriptive but brief."
)
TITLE_PROMPT = (
    "Generate an SEO-optimized title for this image, under 60 characters, that is "
    "compelling and keyword-rich for search rankings."
)
DESCRIPTION_PROMPT = (
    "Provide a comprehensive description of this image including subjects, setting, "
    "colors, mood, composition, and notable details."
)

_DATA_URI = re.compile(r"^data:image/(png|jpeg|jpg|gif|webp);base64,")

ImageInput = Union[str, Sequence[str]]


def _validate_image_url(image_url: str) -> None:
    """Accept an absolute URL or a base64 image data URI."""
    parsed = urlparse(image_url)
    if parsed.scheme and parsed.netloc:
        return
    if not _DATA_URI.match(image_url):
        raise ValidationError("Invalid image URL or base64 data URI")


def _vision_defaults(options: OptionsLike, max_tokens: int, temperature: float) -> VisionOptions:
    opts = coerce_options(options, VisionOptions)
    return replace(
        opts,
        max_tokens=opts.max_tokens if opts.max_tokens is not None else max_tokens,
        temperature=opts.temperature if opts.temperature is not None else temperature,
    )


class VisionService:
    """Image analysis with accessibility, SEO and description prompts.

    The generate and analyze_image methods accept one image URL or a list;
    a list yields one result per image, in order.
    """

    def __init__(self, dispatcher):
        self._dispatcher = dispatcher

    async def generate_alt_text(
        self, image_url: ImageInput, options: OptionsLike = None
    ) -> Union[str, List[str]]:
        """Screen-reader alt text, under 125 characters."""
        return await self._run(image_url, ALT_TEXT_PROMPT, _vision_defaults(options, 100, 0.5))

    async def generate_title(
        self, image_url: ImageInput, options: OptionsLike = None
    ) -> Union[str, List[str]]:
        return await self._run(image_url, TITLE_PROMPT, _vision_defaults(options, 50, 0.7))

    async def generate_description(
        self, image_url: ImageInput, options: OptionsLike = None
    ) -> Union[str, List[str]]:
        return await self._run(image_url, DESCRIPTION_PROMPT, _vision_defaults(options, 500, 0.7))

    async def analyze_image(
        self, image_url: ImageInput, prompt: str, options: OptionsLike = None
    ) -> Union[str, List[str]]:
        """Answer a custom prompt about one or more images."""
        return await self._run(image_url, prompt, coerce_options(options, VisionOptions))

    async def analyze_image_full(
        self, image_url: str, prompt: str, options: OptionsLike = None
    ) -> VisionResponse:
        """Analyze one image and return the full response.

        Raises:
            ValidationError: If ``image_url`` is neither a URL nor an image data URI
        """
        _validate_image_url(image_url)
        content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
        return await self._dispatcher.vision(content, coerce_options(options, VisionOptions))

    async def _run(
        self, image_url: ImageInput, prompt: str, options: VisionOptions
    ) -> Union[str, List[str]]:
        if isinstance(image_url, str):
            response = await self.analyze_image_full(image_url, prompt, options)
            return response.description
        return [
            (await self.analyze_image_full(url, prompt, options)).description
            for url in image_url
        ]


# =============================================================================
# Translation
# =============================================================================

FORMALITIES = ("default", "formal", "informal")
DOMAINS = ("general", "technical", "medical", "legal", "marketing")

LANGUAGE_NAMES = {
    "en": "English",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "pl": "Polish",
    "ru": "Russian",
    "ja": "Japanese",
    "zh": "Chinese",
    "ko": "Korean",
    "ar": "Arabic",
}

DETECTION_PROMPT = (
    "You are a language detection expert. Respond with ONLY the ISO 639-1 language "
    'code (e.g., "en", "de", "fr"). No explanation.'
)
QUALITY_PROMPT = (
    "You are a translation quality expert. Evaluate the translation quality based on "
    "accuracy, fluency, and consistency. Respond with ONLY a number between 0.0 and "
    '1.0 (e.g., "0.85"). No explanation.'
)

_LANGUAGE_CODE = re.compile(r"^[a-z]{2}(-[A-Z]{2})?$")
_DETECTED_CODE = re.compile(r"^[a-z]{2}$")
_FINISH_CONFIDENCE = {"stop": 0.9, "length": 0.6}


def _check_language(code: str) -> None:
    if not _LANGUAGE_CODE.match(code or ""):
        raise ValidationError(
            'Invalid language code format. Expected ISO 639-1 (e.g., "en", "de-DE")'
        )


def _check_translation_options(options: Mapping[str, Any]) -> None:
    formality = options.get("formality")
    if formality is not None and formality not in FORMALITIES:
        raise ValidationError(f"Invalid formality. Supported: {', '.join(FORMALITIES)}")
    domain = options.get("domain")
    if domain is not None and domain not in DOMAINS:
        raise ValidationError(f"Invalid domain. Supported: {', '.join(DOMAINS)}")
    glossary = options.get("glossary")
    if glossary is not None and not isinstance(glossary, Mapping):
        raise ValidationError("Glossary must be a mapping of term to translation")


def _short_request(options: Mapping[str, Any]) -> Dict[str, Any]:
    """Deterministic, few-token request settings for classification prompts."""
    request: Dict[str, Any] = {"temperature": 0.1, "max_tokens": 10}
    if options.get("provider"):
        request["provider"] = options["provider"]
    return request


class TranslationService:
    """Text translation with glossary, formality and domain control.

    Options for ``translate``:
        formality: ``default``, ``formal`` or ``informal``
        domain: ``general``, ``technical``, ``medical``, ``legal`` or ``marketing``
        glossary: Mapping of term to its required translation
        context: Surrounding text, given for reference only
        preserve_formatting: Keep markup and special characters (default True)
        temperature: Defaults to 0.3
        max_tokens: Defaults to 2000
        provider: Provider identifier to use
    """

    def __init__(self, dispatcher):
        self._dispatcher = dispatcher

    async def translate(
        self,
        text: str,
        target_language: str,
        source_language: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> TranslationResult:
        """Translate ``text``, detecting the source language when not given.

        Raises:
            ValidationError: On empty text, a malformed language code or an
                unsupported option value
        """
        if not text:
            raise ValidationError("Text cannot be empty")
        opts = dict(options or {})
        _check_language(target_language)
        if source_language is not None:
            _check_language(source_language)
        _check_translation_options(opts)

        if source_language is None:
            source_language = await self.detect_language(text, opts)

        messages = [
            {
                "role": "system",
                "content": self._system_prompt(source_language, target_language, opts),
            },
            {"role": "user", "content": f"Translate this text:\n\n{text}"},
        ]
        request: Dict[str, Any] = {
            "temperature": opts.get("temperature", 0.3),
            "max_tokens": opts.get("max_tokens", 2000),
        }
        if opts.get("provider"):
            request["provider"] = opts["provider"]

        response = await self._dispatcher.chat(messages, request)
        return TranslationResult(
            translation=response.content,
            source_language=source_language,
            target_language=target_language,
            confidence=_FINISH_CONFIDENCE.get(response.finish_reason, 0.5),
            usage=response.usage,
        )

    async def translate_batch(
        self,
        texts: Sequence[str],
        target_language: str,
        source_language: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[TranslationResult]:
        """Translate each text in turn; an empty batch makes no call."""
        return [
            await self.translate(text, target_language, source_language, options)
            for text in texts
        ]

    async def detect_language(
        self, text: str, options: Optional[Mapping[str, Any]] = None
    ) -> str:
        """ISO 639-1 code of ``text``; ``en`` when the answer is not a code."""
        messages = [
            {"role": "system", "content": DETECTION_PROMPT},
            {"role": "user", "content": f"Detect the language of this text:\n\n{text}"},
        ]
        response = await self._dispatcher.chat(messages, _short_request(options or {}))
        detected = response.content.strip().lower()
        if not _DETECTED_CODE.match(detected):
            logger.debug(f"Language detection returned {detected!r}, assuming 'en'")
            return "en"
        return detected

    async def score_translation_quality(
        self,
        source_text: str,
        translated_text: str,
        target_language: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> float:
        """Quality score between 0.0 and 1.0; unparseable answers score 0.0."""
        messages = [
            {"role": "system", "content": QUALITY_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Source text:\n{source_text}\n\n"
                    f"Translation to {target_language}:\n{translated_text}\n\n"
                    "Quality score:"
                ),
            },
        ]
        response = await self._dispatcher.chat(messages, _short_request(options or {}))
        try:
            score = float(response.content.strip())
        except ValueError:
            logger.debug(f"Unparseable quality score {response.content!r}")
            return 0.0
        return max(0.0, min(1.0, score))

    @staticmethod
    def _system_prompt(source: str, target: str, options: Mapping[str, Any]) -> str:
        domain = options.get("domain") or "general"
        prompt = (
            f"You are a professional {domain} translator. Translate the following text "
            f"from {LANGUAGE_NAMES.get(source, source)} to {LANGUAGE_NAMES.get(target, target)}.\n"
        )
        formality = options.get("formality") or "default"
        if formality != "default":
            prompt += f"Maintain {formality} tone.\n"
        if options.get("preserve_formatting", True):
            prompt += "Preserve all formatting, HTML tags, markdown, and special characters.\n"
        glossary = options.get("glossary")
        if glossary:
            prompt += "\nUse these exact term translations:\n"
            for term, translation in glossary.items():
                prompt += f"- {term} → {translation}\n"
        context = options.get("context")
        if context:
            prompt += f"\nContext (for reference only):\n{context}\n"
        return prompt + "\nProvide ONLY the translation, no explanations or notes."
