"""Typed parsing of classifier responses.

Language models wrap JSON in code fences, prepend prose, or get cut off
mid-array. ``parse_structured`` is the one place that turns such text into a
pydantic model, falling back to a caller-supplied neutral default instead of
raising.
"""

import json
import re
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_TRUNCATED_URL_ARRAY = re.compile(r'\{.*"articleUrls"\s*:\s*\[[^\]]*', re.DOTALL)


class LinkClassification(BaseModel):
    """Links the classifier judged to be articles."""

    model_config = ConfigDict(populate_by_name=True)

    article_urls: list[str] = Field(default_factory=list, alias="articleUrls")

    @field_validator("article_urls", mode="before")
    @classmethod
    def drop_non_strings(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [item.strip() for item in v if isinstance(item, str) and item.strip()]


class SelectorSuggestion(BaseModel):
    """CSS selectors proposed for a source's article pages."""

    model_config = ConfigDict(populate_by_name=True)

    title_selector: str | None = Field(default=None, alias="titleSelector")
    content_selector: str | None = Field(default=None, alias="contentSelector")
    author_selector: str | None = Field(default=None, alias="authorSelector")
    date_selector: str | None = Field(default=None, alias="dateSelector")
    confidence: float = 0.0

    @field_validator("title_selector", "content_selector", "author_selector", "date_selector", mode="before")
    @classmethod
    def drop_non_string_selectors(cls, v: Any) -> str | None:
        return v if isinstance(v, str) and v.strip() else None

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return 0.0


class ArticleAnalysis(BaseModel):
    """Relevance verdict for one article."""

    model_config = ConfigDict(populate_by_name=True)

    is_flagged: bool = Field(default=False, alias="isFlagged")
    score: int = Field(default=0, ge=0, le=100)
    categories: list[str] = Field(default_factory=list)
    summary: str = ""
    keywords: list[str] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> int:
        try:
            return max(0, min(100, int(round(float(v)))))
        except (TypeError, ValueError):
            return 0

    @field_validator("is_flagged", mode="before")
    @classmethod
    def coerce_flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)

    @field_validator("categories", "keywords", mode="before")
    @classmethod
    def coerce_string_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v = v.split(",")
        if not isinstance(v, list):
            return []
        return [item.strip() for item in v if isinstance(item, str) and item.strip()]

    @field_validator("summary", mode="before")
    @classmethod
    def coerce_summary(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""


def _json_candidates(raw: str) -> list[str]:
    """Progressively more forgiving slices of ``raw`` that might be JSON."""
    text = raw.strip()
    candidates = [text]

    fence = _CODE_FENCE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    truncated = _TRUNCATED_URL_ARRAY.search(text)
    if truncated:
        # Cut back to the last complete string before closing the array
        body = truncated.group(0).rstrip()
        if not body.endswith(('"', "[")):
            last_quote = body.rfind('",')
            body = body[: last_quote + 1] if last_quote != -1 else body[: body.rfind("[") + 1]
        candidates.append(body + "]}")

    return candidates


def _validate_partial(data: dict[str, Any], model: type[ModelT], error: ValidationError) -> ModelT | None:
    """Drop the fields named in ``error`` and validate what is left."""
    bad_fields = {str(item["loc"][0]) for item in error.errors() if item.get("loc")}
    kept = {key: value for key, value in data.items() if key not in bad_fields}
    if not kept:
        return None
    try:
        result = model.model_validate(kept)
    except ValidationError:
        return None
    logger.info("classifier_response_partially_recovered", model=model.__name__, dropped=sorted(bad_fields))
    return result


def parse_structured(raw: str | None, model: type[ModelT], default: ModelT) -> ModelT:
    """
    Parse classifier output into ``model``.

    Tries strict JSON, then the contents of a code fence, then the outermost
    ``{...}`` object, then a truncated ``articleUrls`` array closed by hand.

    Args:
        raw: Raw response text (may be None when the API returned no content)
        model: Pydantic model to validate against
        default: Neutral value returned when nothing parses

    Returns:
        A validated ``model`` instance, or ``default``
    """
    if not raw or not raw.strip():
        logger.warning("classifier_response_empty", model=model.__name__)
        return default

    for candidate in _json_candidates(raw):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict):
            continue
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.debug("classifier_response_invalid", model=model.__name__, error=str(e))
            recovered = _validate_partial(data, model, e)
            if recovered is not None:
                return recovered

    logger.warning(
        "classifier_response_unparseable",
        model=model.__name__,
        preview=raw[:200],
    )
    return default
