"""Text normalization for description/counterparty similarity"""

import re
import unicodedata
from typing import FrozenSet, Optional

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def strip_accents(text: str) -> str:
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join(c for c in nfkd if not unicodedata.combining(c))


def tokenize(*texts: Optional[str]) -> FrozenSet[str]:
    """Case-insensitive, accent-stripped token set of the given texts"""
    tokens = set()
    for text in texts:
        if not text:
            continue
        cleaned = _NON_ALNUM.sub(" ", strip_accents(text).lower())
        tokens.update(t for t in cleaned.split() if t)
    return frozenset(tokens)


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """Token-set Jaccard similarity; 0.0 when either side is empty"""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
