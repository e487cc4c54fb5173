"""
Company name normalization

Turns a company name into the comparison key used by every matching rule:
case-folded, accent-free, punctuation-free, with legal-form suffixes
removed and sector synonyms collapsed ("Technologies" -> "tech",
"Corporation" -> "corp").
"""

import re
import unicodedata
from typing import Dict, Iterable, Optional

from config_manager import MatchingConfig

_DROPPED_PUNCTUATION = re.compile(r"[,.]")
_OTHER_PUNCTUATION = re.compile(r"[^\w\s&-]")
_WHITESPACE = re.compile(r"\s+")


class NameNormalizer:
    """Deterministic, total name normalizer

    Never raises: None and empty strings normalize to "".
    """

    def __init__(self, matching_config: Optional[MatchingConfig] = None):
        matching_config = matching_config or MatchingConfig()
        self.synonyms: Dict[str, str] = {
            k.lower(): v.lower() for k, v in matching_config.synonyms.items()
        }
        self.legal_suffixes = frozenset(s.lower() for s in matching_config.legal_suffixes)

    def normalize(self, name: Optional[str]) -> str:
        if not name:
            return ""
        text = unicodedata.normalize('NFKD', str(name).casefold())
        text = ''.join(c for c in text if not unicodedata.combining(c))
        text = _DROPPED_PUNCTUATION.sub('', text)
        text = _OTHER_PUNCTUATION.sub(' ', text)
        tokens = []
        for token in text.split():
            token = self.synonyms.get(token, token)
            if token not in self.legal_suffixes:
                tokens.append(token)
        return _WHITESPACE.sub(' ', ' '.join(tokens)).strip()

    def normalize_all(self, names: Iterable[str]) -> set:
        """Normalized forms of several names, empty forms dropped"""
        return {n for n in (self.normalize(name) for name in names) if n}


_default_normalizer: Optional[NameNormalizer] = None


def normalize(name: Optional[str]) -> str:
    """Normalize with the default suffix and synonym tables"""
    global _default_normalizer
    if _default_normalizer is None:
        _default_normalizer = NameNormalizer()
    return _default_normalizer.normalize(name)
