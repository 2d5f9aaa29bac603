"""
Text normalization shared by the CSV normalizer and the matching rules.
"""

import re
import unicodedata

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: str) -> str:
    """Lower-case, strip diacritics and surrounding whitespace."""
    return strip_diacritics((value or "").lower()).strip()


def normalize_reference(value: str) -> str:
    """normalize_text, then drop everything that is not [a-z0-9]."""
    return _NON_ALNUM.sub("", normalize_text(value))
