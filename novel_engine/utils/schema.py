"""Schema-validated parsing of model output with a partial-result fallback."""

from typing import Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..errors import ExtractionError
from .text import parse_json_response

M = TypeVar("M", bound=BaseModel)


def validate_partial(schema: Type[M], data: dict, source: str = "response") -> M:
    """Validate ``data``, discarding only the parts that fail.

    Invalid list items are removed from their list; any other invalid field
    falls back to its default. Every schema used here has defaults for all
    fields, so the worst case is an empty instance.
    """
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors()

    cleaned = dict(data)
    bad_items: dict[str, set[int]] = {}
    bad_fields: set[str] = set()
    for err in errors:
        loc = err.get("loc", ())
        if not loc:
            continue
        key = str(loc[0])
        if len(loc) > 1 and isinstance(loc[1], int) and isinstance(cleaned.get(key), list):
            bad_items.setdefault(key, set()).add(loc[1])
        else:
            bad_fields.add(key)

    for key, indexes in bad_items.items():
        cleaned[key] = [item for i, item in enumerate(cleaned[key]) if i not in indexes]
    for key in bad_fields:
        cleaned.pop(key, None)

    logger.warning(
        "Partial parse of {}: dropped fields {} and {} list item(s)",
        source,
        sorted(bad_fields),
        sum(len(v) for v in bad_items.values()),
    )
    try:
        return schema.model_validate(cleaned)
    except ValidationError:
        logger.warning("Could not salvage {}; using defaults", source)
        return schema()


def load_json_object(text: str, source: str = "response", list_key: Optional[str] = None) -> dict:
    """Extract a JSON object from model output or raise ExtractionError.

    A bare JSON array is wrapped as ``{list_key: [...]}`` when ``list_key`` is
    given.
    """
    try:
        data = parse_json_response(text or "")
    except ValueError as e:
        raise ExtractionError(f"No JSON found in {source}") from e

    if isinstance(data, list) and list_key:
        data = {list_key: data}
    if not isinstance(data, dict):
        raise ExtractionError(f"Unexpected JSON shape in {source}: {type(data).__name__}")
    return data


def parse_structured(
    text: str,
    schema: Type[M],
    source: str = "response",
    list_key: Optional[str] = None,
) -> M:
    """Parse a JSON-bearing model response into ``schema``.

    Unparseable text degrades to the schema defaults with a warning.
    """
    try:
        data = load_json_object(text, source, list_key)
    except ExtractionError as e:
        logger.warning(f"{e}; using defaults")
        return schema()
    return validate_partial(schema, data, source)
