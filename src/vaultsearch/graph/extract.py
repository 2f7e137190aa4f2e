from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from ..index.chunk_store import link_key, normalize_tag


# Very small, local-first entity detection:
# - Captures multi-word Capitalized sequences: "Carl Jung", "New York"
# - Captures all-caps acronyms: "NLP", "USA"
_ENTITY_RE = re.compile(
    r"\b(?:[A-Z]{2,}(?:-[A-Z]{2,})*|[A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,4})\b"
)

# Filter out common titlecase words that are rarely meaningful entities alone.
_STOP = {
    "A", "About", "After", "Also", "An", "And", "Are", "As", "At", "Be", "Because", "Before",
    "But", "By", "Can", "Do", "For", "From", "He", "Her", "Here", "His", "How", "However",
    "I", "If", "In", "Into", "Is", "It", "Its", "Me", "My", "No", "Not", "Note", "Notes",
    "Of", "On", "Or", "Our", "She", "So", "Some", "That", "The", "Their", "Then", "There",
    "These", "They", "This", "Those", "To", "Today", "We", "Were", "What", "When", "Where",
    "Which", "Who", "Why", "With", "Yes", "Yesterday", "You", "Your",
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December",
}
_STOP_LOWER = {s.lower() for s in _STOP}

_ORG_SUFFIX_RE = re.compile(
    r"\b(?:Inc|Corp|Corporation|LLC|LLP|Ltd|Company|Co|Group|Foundation|Institute|"
    r"University|College|School|Hospital|Clinic|Bank|Association|Labs?|Agency|Society)$"
)
_LOC_SUFFIX_RE = re.compile(r"(?:burg|ton|ville|city|town|field|ford|port|land|shire|stan|polis)$", re.IGNORECASE)
_LOC_PREFIX_RE = re.compile(
    r"\b(?:located|based|headquartered|situated|lives?|lived|living|resides?|born|moved|travel(?:l?ed)?)\s+(?:in|to|at)\s*$"
    r"|\b(?:in|near|from)\s*$",
    re.IGNORECASE,
)
_PERSON_TITLE_RE = re.compile(r"\b(?:Dr|Mr|Mrs|Ms|Prof|Sir|Dame)\.?\s*$")
_PERSON_VERB_RE = re.compile(
    r"^\s+(?:works|worked|said|says|wrote|writes|lives|lived|met|joined|founded|thinks|believes|argues|was born)\b"
)

_RELATION_CUES: list[tuple[re.Pattern[str], str, float]] = [
    (re.compile(r"\b(?:works?|worked|working)\s+(?:at|for)\b|\bemployed\s+by\b|\bjoined\b"), "works-for", 0.8),
    (re.compile(r"\b(?:ceo|cto|founder|engineer|employee|manager|director)\s+(?:at|of)\b"), "works-for", 0.75),
    (re.compile(r"\bfounded\s+by\b"), "founded-by", 0.75),
    (re.compile(r"\b(?:located|based|headquartered|situated)\s+in\b"), "located-in", 0.8),
    (re.compile(r"\b(?:lives?|lived|living|resides?)\s+in\b"), "lives-in", 0.75),
    (re.compile(r"\b(?:part|member|division|subsidiary|branch)\s+of\b"), "part-of", 0.7),
    (re.compile(r"\bis\s+an?\s+(?:kind|type|form|sort)\s+of\b"), "is-a", 0.6),
]
_SENTENCE_BREAK_RE = re.compile(r"[.!?]\s|\n\s*\n")


@dataclass(frozen=True)
class DetectedMention:
    surface: str
    start: int
    end: int
    type: str = "other"
    confidence: float = 0.5

    @property
    def norm(self) -> str:
        return norm_entity(self.surface)


@dataclass(frozen=True)
class CandidateRelationship:
    source: int  # index into ExtractionResult.mentions
    target: int
    type: str
    confidence: float


@dataclass(frozen=True)
class ExtractionResult:
    chunk_id: str
    mentions: list[DetectedMention] = field(default_factory=list)
    relationships: list[CandidateRelationship] = field(default_factory=list)


class EntityModel(Protocol):
    def detect_entities(self, text: str) -> list[DetectedMention]: ...

    def classify_relationship(
        self, a: DetectedMention, b: DetectedMention, context: str
    ) -> tuple[str, float] | None: ...


def norm_entity(name: str) -> str:
    # Normalize for stable matching.
    return re.sub(r"\s+", " ", name.strip()).lower()


class RuleBasedModel:
    """Lexical detector and cue-phrase relationship classifier.

    Good enough to build an entity index for exploration and graph-based
    retrieval without any model download. Swap in a statistical NER by
    implementing the same two methods.
    """

    def __init__(self, *, min_chars: int = 3):
        self.min_chars = int(min_chars)

    def detect_entities(self, text: str) -> list[DetectedMention]:
        out: list[DetectedMention] = []
        for m in _ENTITY_RE.finditer(text):
            raw, start = m.group(0), m.start()

            # "The Beatles" -> "Beatles"
            words = raw.split()
            while len(words) > 1 and words[0] in _STOP:
                start = text.index(words[1], start + len(words[0]))
                words = words[1:]
            raw = text[start : m.end()]

            if len(raw) < self.min_chars or raw in _STOP or norm_entity(raw) in _STOP_LOWER:
                continue

            etype, conf = classify_type(text, start, m.end())
            out.append(DetectedMention(surface=raw, start=start, end=m.end(), type=etype, confidence=conf))
        return out

    def classify_relationship(
        self, a: DetectedMention, b: DetectedMention, context: str
    ) -> tuple[str, float] | None:
        between = context.lower()
        if _SENTENCE_BREAK_RE.search(context):
            return ("related-to", 0.2)

        for pattern, rel_type, conf in _RELATION_CUES:
            if pattern.search(between):
                if rel_type == "works-for" and (a.type, b.type) != ("person", "organization"):
                    conf -= 0.2
                if rel_type in {"located-in", "lives-in"} and b.type != "location":
                    conf -= 0.2
                return (rel_type, round(conf, 3))
        return ("related-to", 0.3)


def classify_type(text: str, start: int, end: int) -> tuple[str, float]:
    """Return (entity type, confidence) for the span text[start:end]."""
    surface = text[start:end]
    before = text[max(0, start - 40) : start]
    after = text[end : end + 40]

    if _ORG_SUFFIX_RE.search(surface):
        return ("organization", 0.85)
    if _PERSON_TITLE_RE.search(before):
        return ("person", 0.85)
    if _PERSON_VERB_RE.match(after):
        return ("person", 0.75)
    if _LOC_PREFIX_RE.search(before):
        return ("location", 0.8 if _LOC_SUFFIX_RE.search(surface) else 0.65)
    if _LOC_SUFFIX_RE.search(surface.split()[-1]):
        return ("location", 0.6)
    if surface.isupper():
        return ("concept", 0.5)
    if len(surface.split()) > 1:
        return ("concept", 0.55)
    return ("other", 0.4)


class EntityExtractor:
    def __init__(
        self,
        model: EntityModel | None = None,
        *,
        window: int = 120,
        min_relationship_confidence: float = 0.25,
        max_per_chunk: int = 50,
    ):
        self.model: EntityModel = model or RuleBasedModel()
        self.window = int(window)
        self.min_relationship_confidence = float(min_relationship_confidence)
        self.max_per_chunk = int(max_per_chunk)

    def extract(
        self,
        chunk_id: str,
        text: str,
        *,
        tags: Sequence[str] = (),
        wikilinks: Sequence[str] = (),
    ) -> ExtractionResult:
        detected = sorted(self.model.detect_entities(text), key=lambda d: (d.start, d.end))
        mentions = _boost_with_links(detected[: self.max_per_chunk], tags, wikilinks)

        best: dict[tuple[int, int, str], float] = {}
        first_index: dict[str, int] = {}
        for i, m in enumerate(mentions):
            first_index.setdefault(m.norm, i)

        for i, a in enumerate(mentions):
            for b in mentions[i + 1 :]:
                if b.start - a.end > self.window:
                    break
                if a.norm == b.norm or b.start < a.end:
                    continue
                res = self.model.classify_relationship(a, b, text[a.end : b.start])
                if res is None:
                    continue
                rel_type, conf = res
                if conf < self.min_relationship_confidence:
                    continue
                key = (first_index[a.norm], first_index[b.norm], rel_type)
                best[key] = max(best.get(key, 0.0), float(conf))

        rels = [
            CandidateRelationship(source=s, target=t, type=rt, confidence=c)
            for (s, t, rt), c in sorted(best.items())
        ]
        return ExtractionResult(chunk_id=chunk_id, mentions=mentions, relationships=rels)


def _boost_with_links(
    mentions: list[DetectedMention], tags: Sequence[str], wikilinks: Sequence[str]
) -> list[DetectedMention]:
    signals = {link_key(w) for w in wikilinks} | {normalize_tag(t).lower().replace("-", " ") for t in tags}
    signals.discard("")
    if not signals:
        return mentions

    out = []
    for m in mentions:
        if m.norm in signals:
            etype = "concept" if m.type == "other" else m.type
            m = DetectedMention(m.surface, m.start, m.end, etype, min(0.95, m.confidence + 0.15))
        out.append(m)
    return out


def extract_entities(
    text: str,
    *,
    min_chars: int = 3,
    max_per_chunk: int = 25,
) -> dict[str, tuple[str, int]]:
    """Return {name_norm: (display_name, count_in_text)}."""
    counts: dict[str, tuple[str, int]] = {}
    for d in RuleBasedModel(min_chars=min_chars).detect_entities(text):
        n = d.norm
        prev = counts.get(n)
        if prev is None:
            if len(counts) >= max_per_chunk:
                continue
            counts[n] = (d.surface, 1)
        else:
            # Keep first seen as display form; increment count.
            counts[n] = (prev[0], prev[1] + 1)
    return counts


def extract_query_terms(text: str, *, max_terms: int = 8) -> list[str]:
    """Fallback term extraction when no entities are present."""
    toks = re.findall(r"[A-Za-z0-9_]+", text.lower())
    out: list[str] = []
    for t in toks:
        if len(t) < 3:
            continue
        if t in _STOP_LOWER:
            continue
        if t not in out:
            out.append(t)
        if len(out) >= max_terms:
            break
    return out
