"""
Splits an agent reply into chat bubbles.

Text is broken at the coarsest boundary that fits: paragraphs, then lines,
then sentences, then words. No piece exceeds ``max_chars`` (a single word
longer than the budget is hard-cut). When more than ``max_bubbles`` pieces
remain the tail is merged into the last bubble, which may then run long.
"""
import re
from typing import List

DEFAULT_BUBBLE_MAX_CHARS = 600
DEFAULT_MAX_BUBBLES = 4

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?…])\s+")


def _wrap_words(text: str, max_chars: int) -> List[str]:
    pieces: List[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
        else:
            pieces.append(current)
            current = word
    if current:
        pieces.append(current)
    return pieces


def _pack(units: List[str], separator: str, max_chars: int) -> List[str]:
    """Greedily joins consecutive units while the result fits."""
    packed: List[str] = []
    current = ""
    for unit in units:
        candidate = f"{current}{separator}{unit}" if current else unit
        if len(candidate) <= max_chars:
            current = candidate
        else:
            if current:
                packed.append(current)
            current = unit
    if current:
        packed.append(current)
    return packed


def _split_unit(text: str, max_chars: int, level: int) -> List[str]:
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    if level == 0:
        separator, parts = "\n\n", _PARAGRAPH_SPLIT.split(text)
    elif level == 1:
        separator, parts = "\n", text.split("\n")
    elif level == 2:
        separator, parts = " ", _SENTENCE_SPLIT.split(text)
    else:
        return _wrap_words(text, max_chars)

    parts = [p.strip() for p in parts if p.strip()]
    if len(parts) <= 1:
        return _split_unit(text, max_chars, level + 1)

    units: List[str] = []
    for part in parts:
        units.extend(_split_unit(part, max_chars, level + 1))
    return _pack(units, separator, max_chars)


def split_into_bubbles(text: str, max_chars: int = DEFAULT_BUBBLE_MAX_CHARS,
                       max_bubbles: int = DEFAULT_MAX_BUBBLES) -> List[str]:
    max_chars = max(1, int(max_chars or DEFAULT_BUBBLE_MAX_CHARS))
    max_bubbles = max(1, int(max_bubbles or DEFAULT_MAX_BUBBLES))

    bubbles = _split_unit(str(text or ""), max_chars, 0)
    if len(bubbles) > max_bubbles:
        # Nothing is dropped: the overflow travels in the last bubble.
        bubbles = bubbles[:max_bubbles - 1] + ["\n".join(bubbles[max_bubbles - 1:])]
    return bubbles
