"""
Entity post-processing for the NER worker.

The recognizer returns raw sub-word tokens whose character offsets are not
reliable, so offsets are recomputed here by searching each token in the
window text. Tokens are then deduplicated across overlapping windows, merged
into whole entities, and composite institution names ("ORG de LOC") joined.
"""

import re
from dataclasses import dataclass
from typing import Iterator

SPECIAL_TOKENS = frozenset({"[UNK]", "[CLS]", "[SEP]"})

# Prepositions bridging an institution and its place ("Tribunal Regional do Trabalho DA 8ª Região")
BRIDGE_PREPOSITIONS = frozenset({"DE", "DO", "DA", "DOS", "DAS"})

POSITION_BUCKET = 50
MIN_WINDOW_CHARS = 10

_UPPER = "A-ZÁÀÂÃÉÈÍÏÓÔÕÖÚÇÑ"
CAPS_RUN_PATTERN = re.compile(rf"\b([{_UPPER}]{{2,}}(?:\s+[{_UPPER}]{{2,}})+)\b")


@dataclass
class RawToken:
    """A sub-word token as returned by the recognizer."""
    word: str
    entity: str
    score: float = 1.0
    start: int = 0
    end: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "RawToken":
        return cls(
            word=data.get("word") or "",
            entity=data.get("entity") or "",
            score=float(data.get("score") or 1.0),
            start=int(data.get("start") or 0),
            end=int(data.get("end") or 0),
        )

    @property
    def entity_type(self) -> str:
        """Entity type without the BIO prefix (PER, LOC, ORG, O)."""
        return re.sub(r"^(B-|I-)", "", self.entity)

    @property
    def clean_word(self) -> str:
        return self.word[2:] if self.word.startswith("##") else self.word


@dataclass
class Entity:
    """A merged named entity with offsets into the normalized text."""
    text: str
    type: str
    score: float
    start: int
    end: int

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "type": self.type,
            "score": self.score,
            "start": self.start,
            "end": self.end,
        }


def normalize_whitespace(text: str) -> str:
    """Collapse line breaks, tabs and repeated spaces into single spaces."""
    return re.sub(r"\s+", " ", re.sub(r"[\r\n\t]+", " ", text or "")).strip()


def title_case_caps_runs(text: str) -> str:
    """
    Title-case runs of two or more consecutive ALL-CAPS words.

    The recognizer under-performs on all-caps boilerplate. The result has the
    same length as the input so offsets stay valid.
    """
    def _title(match: re.Match) -> str:
        return re.sub(r"(?:^|\s)\S", lambda m: m.group(0).upper(), match.group(0).lower())

    return CAPS_RUN_PATTERN.sub(_title, text)


def iter_windows(text: str, size: int, overlap: int) -> Iterator[tuple[int, str]]:
    """Yield (offset, window) pairs of overlapping fixed-size windows."""
    step = max(size - overlap, 1)
    for offset in range(0, len(text), step):
        window = text[offset:offset + size]
        if len(window) < MIN_WINDOW_CHARS:
            continue
        yield offset, window


def realign_offsets(tokens: list[RawToken], window: str, offset: int) -> list[RawToken]:
    """
    Recompute token offsets by case-insensitive search in the window.

    Model-reported offsets are discarded. A cursor advances past each match so
    repeated tokens resolve to successive occurrences. Tokens that cannot be
    found, and special tokens, are dropped.
    """
    cursor = 0
    window_lower = window.lower()
    adjusted = []

    for token in tokens:
        if token.word in SPECIAL_TOKENS:
            continue
        word = token.clean_word
        if not word:
            continue
        idx = window_lower.find(word.lower(), cursor)
        if idx == -1:
            continue
        cursor = idx + len(word)
        adjusted.append(RawToken(
            word=token.word,
            entity=token.entity,
            score=token.score,
            start=idx + offset,
            end=idx + len(word) + offset,
        ))

    return adjusted


def dedupe_tokens(tokens: list[RawToken]) -> list[RawToken]:
    """
    Drop tokens repeated by overlapping windows.

    Key is (lowercased word, entity type, position bucket); the type is part of
    the key so the same surface form in two categories is kept twice.
    """
    seen = set()
    unique = []
    for token in tokens:
        key = (token.word.lower(), token.entity_type, token.start // POSITION_BUCKET)
        if key in seen:
            continue
        seen.add(key)
        unique.append(token)
    return unique


def merge_tokens(tokens: list[RawToken]) -> list[Entity]:
    """
    Merge sub-word tokens into entities.

    Consecutive tokens of the same type are joined when adjacent (gap 0) or
    separated by one character (gap 1, joined with a space). A token tagged
    ``O`` is held as a pending prefix and glued onto an immediately adjacent
    ``##`` entity token, healing names whose first fragment was mis-tagged.
    """
    ordered = sorted(tokens, key=lambda t: t.start)
    result: list[Entity] = []
    current = None
    pending_prefix = None

    for token in ordered:
        is_subtoken = token.word.startswith("##")
        word = token.clean_word
        if not word:
            continue

        if token.entity == "O":
            pending_prefix = token
            continue

        entity_type = token.entity_type
        word_to_use = word
        start = token.start
        if is_subtoken and pending_prefix is not None and token.start == pending_prefix.end:
            word_to_use = pending_prefix.clean_word + word
            start = pending_prefix.start
        pending_prefix = None

        if current is not None:
            distance = start - current.end
            if current.type == entity_type and 0 <= distance <= 1:
                current.text += ("" if distance == 0 else " ") + word_to_use
                current.end = token.end
                current.score = min(current.score, token.score)
                continue
            result.append(current)

        current = Entity(
            text=word_to_use,
            type=entity_type,
            score=token.score,
            start=start,
            end=token.end,
        )

    if current is not None:
        result.append(current)
    return result


def merge_org_loc(entities: list[Entity], original_text: str) -> list[Entity]:
    """
    Join an ORG with a following short ORG/LOC across a bridging preposition.

    "COMPANHIA DE TRANSITO" (ORG) + "MACAPA" (LOC) -> "COMPANHIA DE TRANSITO DE MACAPA" (ORG)
    """
    result = []
    i = 0
    while i < len(entities):
        current = entities[i]
        nxt = entities[i + 1] if i + 1 < len(entities) else None

        if (
            nxt is not None
            and current.type == "ORG"
            and nxt.type in ("ORG", "LOC")
            and len(nxt.text.split()) <= 2
        ):
            gap = original_text[current.end:nxt.start].strip().upper()
            if gap in BRIDGE_PREPOSITIONS:
                result.append(Entity(
                    text=f"{current.text} {gap} {nxt.text}",
                    type="ORG",
                    score=min(current.score, nxt.score),
                    start=current.start,
                    end=nxt.end,
                ))
                i += 2
                continue

        result.append(current)
        i += 1

    return result
