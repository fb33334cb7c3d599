"""
Named accessors for source record fields.

Source records carry loose, inconsistently named fields. Every read goes
through an accessor here, and each accessor lists its fallback chain
explicitly: the first field holding a non-empty value wins.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..models.record import EntityType, SourceRecord


NAME_FIELDS: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.ORGANIZATION: ("Name", "Organization Name", "Organisation", "name"),
    EntityType.LOCATION: ("Name", "Location", "name"),
    EntityType.PROJECT: ("Name", "Project", "name"),
    EntityType.STORYTELLER: ("Name", "Full Name", "name", "full_name"),
    EntityType.STORY: ("Title", "Story Title", "title", "name"),
    EntityType.THEME: ("Name", "Theme", "name"),
    EntityType.QUOTE: ("Quote Text", "Quote", "Text", "quote_text", "text"),
    EntityType.MEDIA: ("Title", "File Name", "Name", "title", "name"),
}

# Reference chains list source-id fields before display-name fields
_ORGANIZATION_REF = ("org_ref", "organization_ref", "Organisation", "Organization", "Organization Name")
_LOCATION_REF = ("location_ref", "Location")
_PROJECT_REF = ("project_ref", "Project")
_STORYTELLER_REF = ("Storytellers", "Storyteller", "storyteller_ref", "Storytellers Name")
_STORY_REF = ("Stories", "Story", "story_ref")
_THEME_REFS = ("Themes", "theme_refs", "Theme", "themes")
_MEDIA_REFS = ("Media", "media_refs")

# Reference fields holding display names; every other reference field holds source ids
NAME_REFERENCE_FIELDS = frozenset({
    "Organisation",
    "Organization",
    "Organization Name",
    "Location",
    "Project",
    "Storytellers Name",
    "Theme",
    "themes",
})

# (entity type, foreign-key column) -> source fields holding the reference
REFERENCE_FIELDS: Dict[Tuple[EntityType, str], Tuple[str, ...]] = {
    (EntityType.PROJECT, "organization_id"): _ORGANIZATION_REF,
    (EntityType.PROJECT, "location_id"): _LOCATION_REF,
    (EntityType.STORYTELLER, "organization_id"): _ORGANIZATION_REF,
    (EntityType.STORYTELLER, "project_id"): _PROJECT_REF,
    (EntityType.STORYTELLER, "location_id"): _LOCATION_REF,
    (EntityType.STORY, "storyteller_id"): _STORYTELLER_REF,
    (EntityType.STORY, "project_id"): _PROJECT_REF,
    (EntityType.QUOTE, "story_id"): _STORY_REF,
    (EntityType.QUOTE, "storyteller_id"): _STORYTELLER_REF,
    (EntityType.MEDIA, "storyteller_id"): _STORYTELLER_REF,
    (EntityType.MEDIA, "story_id"): _STORY_REF,
}

# (entity type, forward association column) -> source fields holding declared links
ASSOCIATION_FIELDS: Dict[Tuple[EntityType, str], Tuple[str, ...]] = {
    (EntityType.STORY, "linked_storytellers"): _STORYTELLER_REF,
    (EntityType.STORY, "linked_themes"): _THEME_REFS,
    (EntityType.STORY, "linked_media"): _MEDIA_REFS,
    (EntityType.QUOTE, "linked_themes"): _THEME_REFS,
    (EntityType.MEDIA, "linked_themes"): _THEME_REFS,
    (EntityType.MEDIA, "linked_storytellers"): _STORYTELLER_REF,
}

# Text searched for theme keywords, per entity type
KEYWORD_TEXT_FIELDS: Dict[EntityType, Tuple[Tuple[str, ...], ...]] = {
    EntityType.STORY: (
        NAME_FIELDS[EntityType.STORY],
        ("Story Transcript", "Transcript (from Media)", "Story Copy", "content"),
    ),
    EntityType.QUOTE: (NAME_FIELDS[EntityType.QUOTE], ("Context", "context")),
    EntityType.MEDIA: (NAME_FIELDS[EntityType.MEDIA], ("Transcript", "transcript")),
}


def first_value(record: SourceRecord, names: Tuple[str, ...]) -> Any:
    """Return the first non-empty value among ``names``, or None."""
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return None


def text_value(record: SourceRecord, names: Tuple[str, ...]) -> Optional[str]:
    """Like first_value, but always a stripped string (lists are joined)."""
    value = first_value(record, names)
    if value is None:
        return None
    if isinstance(value, list):
        value = ", ".join(str(v) for v in value if v not in (None, ""))
    text = str(value).strip()
    return text or None


def as_list(value: Any) -> List[str]:
    """Normalize a scalar or list value into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v not in (None, "")]
    text = str(value).strip()
    return [text] if text else []


def record_name(record: SourceRecord) -> Optional[str]:
    return text_value(record, NAME_FIELDS[record.entity_type])


@dataclass(frozen=True)
class DeclaredReference:
    """
    Values a record declares for a reference column.

    ``by_name`` is set when the values came from a display-name field;
    otherwise they are source record ids and must never be name-matched.
    """
    values: List[str] = field(default_factory=list)
    field_name: Optional[str] = None
    by_name: bool = False


def _declared(record: SourceRecord, names: Tuple[str, ...]) -> DeclaredReference:
    for name in names:
        value = record.get(name)
        if value is not None:
            return DeclaredReference(
                values=as_list(value),
                field_name=name,
                by_name=name in NAME_REFERENCE_FIELDS,
            )
    return DeclaredReference()


def reference_values(record: SourceRecord, column: str) -> DeclaredReference:
    """Ids or names a record declares for a foreign-key column."""
    return _declared(record, REFERENCE_FIELDS.get((record.entity_type, column), ()))


def association_values(record: SourceRecord, column: str) -> DeclaredReference:
    """Ids or names a record declares for a forward association column."""
    return _declared(record, ASSOCIATION_FIELDS.get((record.entity_type, column), ()))


def keyword_text(record: SourceRecord) -> str:
    """All free text of a record that theme keywords are matched against."""
    parts = []
    for names in KEYWORD_TEXT_FIELDS.get(record.entity_type, ()):
        text = text_value(record, names)
        if text:
            parts.append(text)
    return "\n".join(parts)


def attachment_url(record: SourceRecord, names: Tuple[str, ...]) -> Optional[str]:
    """URL of the first attachment (``[{"url": ...}]``) or a plain URL string."""
    value = first_value(record, names)
    if isinstance(value, list) and value:
        value = value[0]
    if isinstance(value, dict):
        value = value.get("url")
    return str(value) if value else None


def profile_image_url(record: SourceRecord) -> Optional[str]:
    return attachment_url(record, ("File Profile Image", "Profile Image", "profile_image_url"))


def story_image_url(record: SourceRecord) -> Optional[str]:
    return attachment_url(record, ("Story Image", "image_url"))


def media_url(record: SourceRecord) -> Optional[str]:
    return attachment_url(
        record,
        ("Media URL", "Video URL", "Video Story Link", "File", "url"),
    )


def story_content(record: SourceRecord) -> Optional[str]:
    return text_value(
        record,
        ("Story Transcript", "Transcript (from Media)", "Story Copy", "content"),
    )


def media_transcript(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Transcript", "transcript"))


def created_value(record: SourceRecord) -> Any:
    return first_value(record, ("Created", "Date Submitted", "created_at"))


def status_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Status", "status"))


def privacy_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Privacy Level", "privacy_level"))


def description_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Description", "description"))


def bio_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Bio", "bio"))


def role_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Role", "role"))


def email_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Email", "email"))


def phone_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Phone Number", "Phone", "phone"))


def organization_type_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Type", "Organization Type", "type"))


def region_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Region", "State", "state"))


def country_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Country", "country"))


def emotion_value(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Emotion", "emotion"))


def quote_context(record: SourceRecord) -> Optional[str]:
    return text_value(record, ("Context", "context"))
