"""JSON Lines parsing into pydantic models."""

import json
import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def parse_jsonl_to_models(
    content: str,
    model_class: type[T],
    *,
    strict: bool = False,
) -> list[T]:
    """
    Parse JSONL content into a list of models.

    Blank lines are ignored. With strict=False a corrupt line is logged and
    skipped so one bad record cannot take the whole file down.

    Raises:
        json.JSONDecodeError, ValidationError: Only when strict=True
    """
    models = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            models.append(model_class.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            if strict:
                raise
            logger.warning(f"Skipping unparseable JSONL line {lineno}: {e}")
    return models
