from __future__ import annotations

from dataclasses import asdict, dataclass

from flask import current_app
from sqlalchemy import or_

from ..app import db
from ..models import Template, TemplateMetadata
from ..shared.cache import TTLCache
from ..shared.fields import DEFAULT_FIELDS, Field, FieldValidationError
from ..shared.storage import template_file_path


@dataclass(frozen=True)
class TemplateRecord:
    """Detached snapshot of a Template row, safe to keep in the cache."""

    id: str
    name: str
    description: str | None
    file_name: str
    file_type: str
    file_size: int
    is_public: bool
    user_id: str
    organization_id: str | None

    @classmethod
    def from_model(cls, template: Template) -> "TemplateRecord":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            file_name=template.file_name,
            file_type=template.file_type,
            file_size=template.file_size or 0,
            is_public=bool(template.is_public),
            user_id=template.user_id,
            organization_id=template.organization_id,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Identity:
    user_id: str | None
    organization_id: str | None = None


class TemplateService:
    def __init__(self, cache: TTLCache):
        self.cache = cache

    def get_template(self, template_id: str) -> TemplateRecord | None:
        key = TTLCache.key("get_template", id=template_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        template = db.session.get(Template, template_id)
        if template is None:
            return None
        record = TemplateRecord.from_model(template)
        self.cache.set(key, record)
        return record

    def list_for_identity(self, identity: Identity) -> list[TemplateRecord]:
        """Templates visible to a personal or organization identity, newest first."""
        key = TTLCache.key(
            "list_for_identity",
            user=identity.user_id,
            organization=identity.organization_id,
        )
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)
        query = Template.query
        if identity.organization_id:
            query = query.filter(
                or_(
                    Template.organization_id == identity.organization_id,
                    Template.is_public.is_(True),
                )
            )
        else:
            query = query.filter(
                or_(
                    (Template.user_id == identity.user_id)
                    & Template.organization_id.is_(None),
                    Template.is_public.is_(True),
                )
            )
        records = [
            TemplateRecord.from_model(t)
            for t in query.order_by(Template.created_at.desc(), Template.name).all()
        ]
        self.cache.set(key, records)
        return list(records)

    def get_default_fields(self, template_id: str, user_id: str | None = None) -> list[Field]:
        """Stored default layout for a template, or the built-in field set.

        A stored layout that fails validation is logged and ignored.
        """
        key = TTLCache.key("get_default_fields", id=template_id, user=user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)
        query = TemplateMetadata.query.filter_by(template_id=template_id, is_default=True)
        if user_id:
            query = query.filter_by(user_id=user_id)
        metadata = query.order_by(TemplateMetadata.updated_at.desc()).first()
        if metadata is None and user_id:
            metadata = (
                TemplateMetadata.query.filter_by(template_id=template_id, is_default=True)
                .order_by(TemplateMetadata.updated_at.desc())
                .first()
            )
        fields = list(DEFAULT_FIELDS)
        if metadata is not None:
            try:
                fields = metadata.fields()
            except FieldValidationError as exc:
                current_app.logger.warning(
                    "[TEMPLATE-METADATA] invalid layout template=%s metadata=%s: %s",
                    template_id,
                    metadata.id,
                    exc,
                )
        self.cache.set(key, tuple(fields))
        return fields

    def template_path(self, template: TemplateRecord | Template) -> str | None:
        return template_file_path(template.file_name)

    def invalidate(self, template_id: str | None = None) -> None:
        if template_id is None:
            self.cache.clear()
            return
        self.cache.invalidate(TTLCache.key("get_template", id=template_id))
        self.cache.invalidate_prefix("list_for_identity:")
        self.cache.invalidate_prefix("get_default_fields:")
