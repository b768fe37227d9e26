"""
Defensive normalization of vision-model output into a ClassificationPayload.

normalize() is total: any JSON-ish value in, a fully-defaulted payload out.
Nothing here raises; malformed pieces silently fall back to defaults.
"""

import math
import re
from typing import Any, Iterable, List, Optional

from .schemas import (
    FONT_STYLE_VALUES,
    FULL_TEXT_MAX_CHARS,
    LIST_LIMITS,
    MEDIA_TYPE_VALUES,
    MODERATION_LABEL_VALUES,
    PII_TYPE_VALUES,
    REVIEW_STATUS_VALUES,
    STYLE_VALUES,
    TRUNCATION_SUFFIX,
    VIBE_VALUES,
    WISDOM_MAX_WORDS,
    ClassificationPayload,
    Confidence,
    ConfidenceByField,
    FontDescription,
    Media,
    Moderation,
    SideBlock,
    SideText,
)

_WS_RE = re.compile(r"\s+")
_INLINE_WS_RE = re.compile(r"[ \t]+")
_FALSY_STRINGS = frozenset({"", "0", "false", "no", "off"})


def normalize(raw: Any) -> ClassificationPayload:
    """Coerce an untyped model response into a ClassificationPayload."""
    p = raw if isinstance(raw, dict) else {}

    return ClassificationPayload(
        topics=norm_list(p.get("topics"), LIST_LIMITS["topics"]),
        feelings=norm_list(p.get("feelings"), LIST_LIMITS["feelings"]),
        meanings=norm_list(p.get("meanings"), LIST_LIMITS["meanings"]),
        vibe=norm_list(p.get("vibe"), LIST_LIMITS["vibe"], allowed=VIBE_VALUES),
        style=enum(p.get("style"), STYLE_VALUES),
        locations=norm_list(p.get("locations"), LIST_LIMITS["locations"]),
        wisdom=truncate_words(norm_str(p.get("wisdom")), WISDOM_MAX_WORDS),
        secret_description=norm_str(p.get("secretDescription")),
        media=Media(type=enum(_dict(p.get("media")).get("type"), MEDIA_TYPE_VALUES)),
        front=_norm_side(p.get("front")),
        # back may legitimately be null; store the default block instead
        back=_norm_side(p.get("back")),
        moderation=_norm_moderation(p.get("moderation")),
        confidence=_norm_confidence(p.get("confidence")),
    )


# ── field helpers ───────────────────────────────────────────

def norm_str(value: Any) -> str:
    """Trim and collapse every whitespace run to one space. Non-strings → ''."""
    if not isinstance(value, str):
        return ""
    return _WS_RE.sub(" ", value.strip())


def norm_text(value: str, max_chars: int = FULL_TEXT_MAX_CHARS) -> str:
    """Transcription cleanup: keep newlines, collapse spaces/tabs, cap length."""
    s = value.replace("\r\n", "\n").replace("\r", "\n")
    s = _INLINE_WS_RE.sub(" ", s).strip()
    if len(s) > max_chars:
        s = s[:max_chars] + TRUNCATION_SUFFIX
    return s


def norm_list(value: Any, limit: Optional[int] = None,
              allowed: Optional[Iterable[str]] = None) -> List[str]:
    """Strings only, lowercased, trimmed, deduped, sorted, then truncated."""
    if not isinstance(value, (list, tuple)):
        return []
    seen = set()
    for item in value:
        if not isinstance(item, str):
            continue
        x = item.strip().lower()
        if not x:
            continue
        if allowed is not None and x not in allowed:
            continue
        seen.add(x)
    out = sorted(seen)
    return out[:limit] if limit is not None else out


def enum(value: Any, allowed: Iterable[str]) -> str:
    if not isinstance(value, str):
        return "unknown"
    v = value.strip().lower()
    return v if v in allowed else "unknown"


def score(value: Any) -> float:
    """Clamp to [0, 1] and round to 2 decimals; anything non-numeric is 0.0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        try:
            x = float(value)
        except OverflowError:
            return 1.0 if value > 0 else 0.0
    elif isinstance(value, str):
        try:
            x = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if math.isnan(x):
        return 0.0
    x = min(1.0, max(0.0, x))
    return round(x, 2)


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def truncate_words(text: str, max_words: int) -> str:
    words = text.split(" ") if text else []
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words])


# ── block helpers ───────────────────────────────────────────

def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _norm_side(side: Any) -> SideBlock:
    if not isinstance(side, dict):
        return SideBlock()

    font = _dict(side.get("fontDescription"))
    text = _dict(side.get("text"))

    full = text.get("fullText")
    full = norm_text(full) if isinstance(full, str) else None

    language = norm_str(text.get("language")).lower() or "unknown"

    return SideBlock(
        art_description=norm_str(side.get("artDescription")),
        font_description=FontDescription(
            style=enum(font.get("style"), FONT_STYLE_VALUES),
            notes=norm_str(font.get("notes")),
        ),
        text=SideText(full_text=full, language=language),
    )


def _norm_moderation(value: Any) -> Moderation:
    m = _dict(value)
    review = m.get("reviewStatus")
    if review is None:
        review = "auto_vetted"
    return Moderation(
        review_status=enum(review, REVIEW_STATUS_VALUES),
        labels=norm_list(m.get("labels"), LIST_LIMITS["labels"], allowed=MODERATION_LABEL_VALUES),
        nsfw_score=score(m.get("nsfwScore")),
        contains_pii=truthy(m.get("containsPII", False)),
        pii_types=norm_list(m.get("piiTypes"), LIST_LIMITS["piiTypes"], allowed=PII_TYPE_VALUES),
    )


def _norm_confidence(value: Any) -> Confidence:
    c = _dict(value)
    bf = _dict(c.get("byField"))
    return Confidence(
        overall=score(c.get("overall")),
        by_field=ConfidenceByField(
            facets=score(bf.get("facets")),
            art_description=score(bf.get("artDescription")),
            font_description=score(bf.get("fontDescription")),
            moderation=score(bf.get("moderation")),
        ),
    )
