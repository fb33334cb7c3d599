"""Transformation engine for converting source records into target rows."""

import re
import logging
from typing import Any, Callable, Dict, List, Optional
from dateutil import parser as date_parser

from ..models.record import EntityType, SourceRecord, TargetEntity
from . import fields

logger = logging.getLogger(__name__)


class TransformError(ValueError):
    """A source record cannot be turned into a target row."""


STATUS_MAP = {
    "draft": "draft",
    "submitted": "pending",
    "pending": "pending",
    "approved": "approved",
    "published": "approved",
    "featured": "featured",
    "archived": "archived",
}

PRIVACY_MAP = {
    "public": "public",
    "community": "community",
    "organization": "organization",
    "organisation": "organization",
    "private": "private",
}

CATEGORY_MAP = {
    "health": "healthcare",
    "healthcare": "healthcare",
    "medical": "healthcare",
    "education": "education",
    "housing": "housing",
    "youth": "youth",
    "young people": "youth",
    "elder care": "elder_care",
    "seniors": "elder_care",
    "policy": "policy",
    "government": "policy",
    "community": "community",
    "environment": "environment",
    "employment": "employment",
    "jobs": "employment",
    "social services": "social_services",
}

ORGANIZATION_TYPE_MAP = {
    "non-profit": "nonprofit",
    "nonprofit": "nonprofit",
    "ngo": "nonprofit",
    "government": "government",
    "healthcare": "healthcare",
    "education": "education",
    "research": "research",
    "community group": "community_group",
    "private": "private_sector",
    "corporate": "private_sector",
}

# Name used when a record of these types has no title at all
UNTITLED = {
    EntityType.STORY: "Untitled Story",
    EntityType.MEDIA: "Untitled Media",
}


def slugify(text: str) -> str:
    """Lower-case, hyphen-separated slug of ``text``."""
    slug = text.lower()
    slug = re.sub(r"[^a-z0-9 -]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def normalize_choice(value: Optional[str], mapping: Dict[str, str], default: str) -> str:
    """Map a free-text choice onto a fixed vocabulary."""
    if not value:
        return default
    return mapping.get(value.strip().lower(), default)


def parse_date(value: Any) -> Optional[str]:
    """Parse a loosely formatted date into ISO 8601, or None."""
    if value in (None, ""):
        return None
    try:
        return date_parser.parse(str(value)).isoformat()
    except (ValueError, OverflowError) as e:
        logger.debug(f"Unparseable date {value!r}: {e}")
        return None


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop empty values so updates never blank existing columns."""
    return {k: v for k, v in values.items() if v is not None}


class TransformEngine:
    """
    Engine for transforming source records to target rows.

    Each entity type has one registered transform taking a SourceRecord and
    returning column values. Foreign keys are not set here; the resolver
    attaches them afterwards.
    """

    def __init__(self):
        """Initialize the transform engine."""
        self._transforms: Dict[EntityType, Callable[[SourceRecord], Dict[str, Any]]] = (
            self._register_builtin_transforms()
        )

    def _register_builtin_transforms(self) -> Dict[EntityType, Callable]:
        """Register all built-in transformation functions."""
        return {
            EntityType.ORGANIZATION: self._transform_organization,
            EntityType.LOCATION: self._transform_location,
            EntityType.PROJECT: self._transform_project,
            EntityType.STORYTELLER: self._transform_storyteller,
            EntityType.STORY: self._transform_story,
            EntityType.THEME: self._transform_theme,
            EntityType.QUOTE: self._transform_quote,
            EntityType.MEDIA: self._transform_media,
        }

    def register_transform(self, entity_type: EntityType, func: Callable[[SourceRecord], Dict[str, Any]]) -> None:
        """Replace the transform used for an entity type."""
        self._transforms[entity_type] = func

    def transform(self, record: SourceRecord) -> TargetEntity:
        """
        Transform a source record into a target entity without foreign keys.

        Raises:
            TransformError: the record lacks the fields its row requires
        """
        transform_func = self._transforms[record.entity_type]
        attributes = _compact(transform_func(record))
        return TargetEntity(
            entity_type=record.entity_type,
            external_id=record.external_id,
            attributes=attributes,
            source=record,
        )

    def transform_all(self, records: List[SourceRecord]) -> Dict[str, Any]:
        """
        Transform a batch.

        Returns:
            {"entities": [...], "errors": [(record, message), ...]}
        """
        entities = []
        errors = []
        for record in records:
            try:
                entities.append(self.transform(record))
            except TransformError as e:
                errors.append((record, str(e)))
                logger.error(f"Failed to transform {record.entity_type.value} {record.external_id}: {e}")
        return {"entities": entities, "errors": errors}

    def _required_name(self, record: SourceRecord) -> str:
        name = fields.record_name(record) or UNTITLED.get(record.entity_type)
        if not name:
            raise TransformError(f"{record.entity_type.value} {record.external_id} has no name")
        return name

    def _transform_organization(self, record: SourceRecord) -> Dict[str, Any]:
        name = self._required_name(record)
        return {
            "name": name,
            "slug": slugify(name),
            "description": fields.description_value(record),
            "organization_type": normalize_choice(
                fields.organization_type_value(record), ORGANIZATION_TYPE_MAP, "community_group"
            ),
        }

    def _transform_location(self, record: SourceRecord) -> Dict[str, Any]:
        name = self._required_name(record)
        return {
            "name": name,
            "slug": slugify(name),
            "region": fields.region_value(record),
            "country": fields.country_value(record),
        }

    def _transform_project(self, record: SourceRecord) -> Dict[str, Any]:
        name = self._required_name(record)
        return {
            "name": name,
            "slug": slugify(name),
            "description": fields.description_value(record),
        }

    def _transform_storyteller(self, record: SourceRecord) -> Dict[str, Any]:
        return {
            "full_name": self._required_name(record),
            "bio": fields.bio_value(record),
            "role": fields.role_value(record),
            "email": fields.email_value(record),
            "phone": fields.phone_value(record),
            "profile_image_url": fields.profile_image_url(record),
        }

    def _transform_story(self, record: SourceRecord) -> Dict[str, Any]:
        title = self._required_name(record)
        return {
            "title": title,
            "slug": slugify(title),
            "content": fields.story_content(record),
            "image_url": fields.story_image_url(record),
            "status": normalize_choice(fields.status_value(record), STATUS_MAP, "pending"),
            "privacy_level": normalize_choice(fields.privacy_value(record), PRIVACY_MAP, "private"),
            "created_at": parse_date(fields.created_value(record)),
        }

    def _transform_theme(self, record: SourceRecord) -> Dict[str, Any]:
        name = self._required_name(record)
        return {
            "name": name,
            "slug": slugify(name),
            "description": fields.description_value(record),
            "category": normalize_choice(
                fields.text_value(record, ("Category", "category")), CATEGORY_MAP, "community"
            ),
        }

    def _transform_quote(self, record: SourceRecord) -> Dict[str, Any]:
        return {
            "quote_text": self._required_name(record),
            "context": fields.quote_context(record),
            "emotion": fields.emotion_value(record),
        }

    def _transform_media(self, record: SourceRecord) -> Dict[str, Any]:
        return {
            "title": self._required_name(record),
            "url": fields.media_url(record),
            "transcript": fields.media_transcript(record),
            "created_at": parse_date(fields.created_value(record)),
        }
