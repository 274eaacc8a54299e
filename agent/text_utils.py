"""
Text helpers for catalog naming and lexical matching.
"""
import re
from typing import List

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WORD_SPLIT = re.compile(r"[^A-Za-z0-9]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

_IRREGULAR_SINGULARS = {
    "people": "person",
    "children": "child",
    "men": "man",
    "women": "woman",
    "data": "data",
    "status": "status",
    "address": "address",
    "analysis": "analysis",
}
_IRREGULAR_PLURALS = {v: k for k, v in _IRREGULAR_SINGULARS.items() if k != v}


def tokenize(text: str, min_length: int = 3) -> List[str]:
    """Lowercase alphanumeric terms of at least ``min_length`` characters."""
    return [t for t in _NON_ALNUM.split((text or "").lower()) if len(t) >= min_length]


def singularize(word: str) -> str:
    lower = word.lower()
    if lower in _IRREGULAR_SINGULARS:
        return _match_case(word, _IRREGULAR_SINGULARS[lower])
    if lower.endswith("ies") and len(lower) > 3:
        return word[:-3] + "y"
    if lower.endswith(("sses", "xes", "zes", "ches", "shes")):
        return word[:-2]
    if lower.endswith("s") and not lower.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def pluralize(word: str) -> str:
    lower = word.lower()
    if lower in _IRREGULAR_PLURALS:
        return _match_case(word, _IRREGULAR_PLURALS[lower])
    if lower in _IRREGULAR_SINGULARS:
        return word
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
        return word[:-1] + "ies"
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def title_case(name: str) -> str:
    """``order_line`` / ``orderLine`` -> ``OrderLine``."""
    spaced = _CAMEL_BOUNDARY.sub(" ", name)
    return "".join(part[:1].upper() + part[1:].lower() for part in _WORD_SPLIT.split(spaced) if part)


def _match_case(original: str, replacement: str) -> str:
    if original.isupper():
        return replacement.upper()
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement
