"""
Query normalization before classification.

Collapses whitespace, tags the language, and maps common romanized Hindi
(Hinglish) food/health words to English so the keyword tables match them.
"""
import re
from typing import Dict

from app.core.types import NormalizedText

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"[a-z]+")
_LETTER = re.compile(r"[^\W\d_]", re.UNICODE)
_DEVANAGARI = re.compile(r"[ऀ-ॿ]")

HINGLISH_TO_ENGLISH: Dict[str, str] = {
    "khana": "food",
    "paani": "water",
    "doodh": "milk",
    "roti": "bread",
    "chawal": "rice",
    "sabzi": "vegetables",
    "anda": "egg",
    "namak": "salt",
    "chini": "sugar",
    "vyayam": "exercise",
    "kasrat": "workout",
    "aram": "rest",
    "sehat": "health",
    "bimari": "disease",
    "dawai": "medicine",
    "dil": "heart",
    "roz": "daily",
    "hafta": "week",
    "subah": "morning",
    "raat": "night",
    "kaise": "how",
    "kya": "what",
    "kitna": "how much",
    "chahiye": "want",
    "batao": "tell",
    "bataiye": "tell me",
    "madad": "help",
}

# Function words that only show up in Hinglish; a single hit tags the text
HINGLISH_MARKERS = frozenset({
    "kya", "kaise", "hai", "hain", "mera", "meri", "mujhe", "kitna", "chahiye",
    "karna", "karo", "batao", "bataiye", "nahi", "accha", "theek", "aur",
})


def normalize(text: str) -> NormalizedText:
    """
    ``language_tag`` is ``hi-en`` for romanized Hindi or Devanagari mixed
    in, ``und`` when there is nothing to classify, else ``en``.
    """
    collapsed = _WHITESPACE.sub(" ", text or "").strip()
    if not _LETTER.search(collapsed):
        return NormalizedText(text=collapsed, language_tag="und")

    words = _WORD.findall(collapsed.lower())
    is_hinglish = bool(_DEVANAGARI.search(collapsed)) or any(w in HINGLISH_MARKERS for w in words)
    if not is_hinglish:
        return NormalizedText(text=collapsed, language_tag="en")

    translated = re.sub(
        r"[A-Za-z]+",
        lambda m: HINGLISH_TO_ENGLISH.get(m.group(0).lower(), m.group(0)),
        collapsed,
    )
    return NormalizedText(text=translated, language_tag="hi-en")
