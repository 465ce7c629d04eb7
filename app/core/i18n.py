from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path

from app.i18n.codes import ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en"
_MESSAGES_DIR = Path(__file__).resolve().parents[1] / "i18n"


@lru_cache(maxsize=8)
def load_messages(locale: str) -> dict[int, str]:
    """Message templates for ``locale`` keyed by numeric error code."""
    path = _MESSAGES_DIR / f"{locale}.json"
    if not path.is_file():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed message file %s", path)
        return {}
    return {
        int(key): value
        for key, value in data.items()
        if isinstance(key, str) and key.isdigit() and isinstance(value, str)
    }


def get_message(code: ErrorCode, locale: str = DEFAULT_LOCALE, **kwargs: str) -> str:
    template = load_messages(locale).get(code.value)
    if template is None:
        template = load_messages(DEFAULT_LOCALE).get(code.value, code.name)
    if not kwargs:
        return template
    try:
        return template.format_map(kwargs)
    except KeyError:
        # template and kwargs disagree; show the raw template
        return template
