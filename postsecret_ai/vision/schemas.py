"""
ClassificationPayload schema: the canonical shape of one classified secret.

Field order matters: model_dump(by_alias=True) emits keys in exactly the
order callers hash and diff on, so fields are declared in that order.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# ── Allowed enum values ──────────────────────────────────────

STYLE_VALUES = frozenset({
    "art_deco", "abstract", "minimalism", "collage", "pop_art", "surrealism",
    "expressionism", "bauhaus", "constructivist", "grunge", "vaporwave",
    "doodle", "cutout", "watercolor", "oil_painting", "pencil_sketch",
    "photomontage", "glitch", "pixel_art", "graffiti", "calligraphic",
    "stencil", "typographic", "realist_photo", "mixed_media", "unknown",
})

VIBE_VALUES = frozenset({
    "bittersweet", "confessional", "defiant", "eerie", "gentle", "grim",
    "hopeful", "melancholic", "nostalgic", "ominous", "playful", "raw",
    "serene", "somber", "tense", "tender", "wistful",
})

MEDIA_TYPE_VALUES = frozenset({
    "postcard", "note_card", "letter", "photo", "poster", "mixed", "unknown",
})

FONT_STYLE_VALUES = frozenset({
    "handwritten", "typed", "stenciled", "mixed", "unknown",
})

REVIEW_STATUS_VALUES = frozenset({
    "auto_vetted", "needs_review", "reject_candidate",
})

MODERATION_LABEL_VALUES = frozenset({
    "extremism_promotion", "fraud_malware", "hate_violence",
    "illicit_instructions", "minors_context", "ncii", "pii_present_strong",
    "self_harm_instructions", "self_harm_mention", "sexual_content",
    "sexual_violence", "slur_present", "targeted_harassment", "threat",
})

PII_TYPE_VALUES = frozenset({"name", "email", "phone", "address", "other"})

# Max cardinality per list facet (None = unlimited)
LIST_LIMITS = {
    "topics": 4,
    "feelings": 3,
    "meanings": 2,
    "vibe": 2,
    "locations": 5,
    "labels": 6,
    "piiTypes": None,
}

WISDOM_MAX_WORDS = 25
FULL_TEXT_MAX_CHARS = 2000
TRUNCATION_SUFFIX = " … [TRUNCATED]"


# ── Payload model ────────────────────────────────────────────

class _Frozen(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class FontDescription(_Frozen):
    style: str = "unknown"
    notes: str = ""


class SideText(_Frozen):
    full_text: Optional[str] = Field(None, alias="fullText")
    language: str = "unknown"


class SideBlock(_Frozen):
    """One physical side of a secret (front or back)."""
    art_description: str = Field("", alias="artDescription")
    font_description: FontDescription = Field(default_factory=FontDescription, alias="fontDescription")
    text: SideText = Field(default_factory=SideText)


class Media(_Frozen):
    type: str = "unknown"


class Moderation(_Frozen):
    review_status: str = Field("auto_vetted", alias="reviewStatus")
    labels: List[str] = Field(default_factory=list)
    nsfw_score: float = Field(0.0, alias="nsfwScore")
    contains_pii: bool = Field(False, alias="containsPII")
    pii_types: List[str] = Field(default_factory=list, alias="piiTypes")


class ConfidenceByField(_Frozen):
    facets: float = 0.0
    art_description: float = Field(0.0, alias="artDescription")
    font_description: float = Field(0.0, alias="fontDescription")
    moderation: float = 0.0


class Confidence(_Frozen):
    overall: float = 0.0
    by_field: ConfidenceByField = Field(default_factory=ConfidenceByField, alias="byField")


class ClassificationPayload(_Frozen):
    """
    Fully-defaulted, immutable classification result for one secret.

    `annotations` carries side-channel results (e.g. the optional
    moderation sub-call) and is never part of the canonical JSON.
    """
    topics: List[str] = Field(default_factory=list)
    feelings: List[str] = Field(default_factory=list)
    meanings: List[str] = Field(default_factory=list)
    vibe: List[str] = Field(default_factory=list)
    style: str = "unknown"
    locations: List[str] = Field(default_factory=list)
    wisdom: str = ""
    secret_description: str = Field("", alias="secretDescription")
    media: Media = Field(default_factory=Media)
    front: SideBlock = Field(default_factory=SideBlock)
    back: SideBlock = Field(default_factory=SideBlock)
    moderation: Moderation = Field(default_factory=Moderation)
    confidence: Confidence = Field(default_factory=Confidence)

    annotations: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    def to_dict(self) -> Dict[str, Any]:
        """Canonical camelCase dict in schema key order."""
        return self.model_dump(by_alias=True)

    def with_annotation(self, key: str, value: Any) -> "ClassificationPayload":
        """Return a copy carrying an extra annotation; the original is untouched."""
        annotations = dict(self.annotations)
        annotations[key] = value
        return self.model_copy(update={"annotations": annotations})

    def facets(self) -> Dict[str, List[str]]:
        """Facet lists keyed by facet type, style folded into a one-item list."""
        return {
            "topics": list(self.topics),
            "feelings": list(self.feelings),
            "meanings": list(self.meanings),
            "vibe": list(self.vibe),
            "style": [self.style] if self.style and self.style != "unknown" else [],
            "locations": list(self.locations),
        }


def default_payload() -> ClassificationPayload:
    return ClassificationPayload()


def default_side() -> SideBlock:
    return SideBlock()
