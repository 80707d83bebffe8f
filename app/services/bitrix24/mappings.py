"""Instance to Open Line mappings."""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.channel_mapping import ChannelMapping
from app.services.bitrix24 import identity, oauth, state
from app.services.bitrix24.channels import apply_activation, coerce_line_id
from app.services.bitrix24.errors import (
    Bitrix24Error,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.services.bitrix24.locks import commit, integration_lock, load_integration
from app.services.common import coerce_uuid

logger = get_logger(__name__)


class ChannelMappings:
    @staticmethod
    def list(db: Session, integration_id, active_only: bool = False) -> list[ChannelMapping]:
        integration = load_integration(db, integration_id)
        query = db.query(ChannelMapping).filter(ChannelMapping.integration_id == integration.id)
        if active_only:
            query = query.filter(ChannelMapping.is_active.is_(True))
        return query.order_by(ChannelMapping.line_id).all()

    @staticmethod
    def get(db: Session, mapping_id) -> ChannelMapping:
        mapping = db.get(ChannelMapping, coerce_uuid(mapping_id, "mapping_id"))
        if not mapping:
            raise NotFoundError("Channel mapping not found", code="mapping_not_found")
        return mapping

    @staticmethod
    def add(db: Session, integration_id, instance_id, line_id, line_name: str | None = None) -> ChannelMapping:
        line_id = coerce_line_id(line_id)
        with integration_lock(db, integration_id) as integration:
            if not integration.workspace_id:
                raise ValidationError("Integration is not linked to a workspace yet", code="workspace_not_linked")
            instance = identity.get_workspace_instance(db, integration.workspace_id, instance_id)
            _ensure_free(db, integration.id, instance.id, line_id)
            mapping = ChannelMapping(
                integration_id=integration.id,
                workspace_id=integration.workspace_id,
                instance_id=instance.id,
                line_id=line_id,
                line_name=line_name or f"Line {line_id}",
                is_active=True,
            )
            db.add(mapping)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError("Instance or line is already mapped", code="mapping_conflict") from exc
            db.refresh(mapping)
        logger.info(
            "bitrix24_mapping_added integration_id=%s instance_id=%s line_id=%s",
            mapping.integration_id,
            mapping.instance_id,
            mapping.line_id,
        )
        return mapping

    @staticmethod
    def delete(db: Session, mapping_id) -> None:
        mapping = ChannelMappings.get(db, mapping_id)
        with integration_lock(db, mapping.integration_id):
            db.delete(mapping)
            db.commit()
        logger.info("bitrix24_mapping_removed mapping_id=%s", mapping_id)


def _ensure_free(db: Session, integration_id, instance_id, line_id: int) -> None:
    rows = (
        db.query(ChannelMapping)
        .filter(ChannelMapping.integration_id == integration_id)
        .filter((ChannelMapping.instance_id == instance_id) | (ChannelMapping.line_id == line_id))
        .all()
    )
    for row in rows:
        if row.instance_id == instance_id:
            raise ConflictError(f"Instance is already mapped to line {row.line_id}", code="instance_already_mapped")
        raise ConflictError(f"Line {line_id} is already mapped to another instance", code="line_already_mapped")


channel_mappings = ChannelMappings()


def add_mapping(db: Session, integration_id, instance_id, line_id, line_name: str | None = None) -> ChannelMapping:
    return channel_mappings.add(db, integration_id, instance_id, line_id, line_name)


def remove_mapping(db: Session, mapping_id) -> None:
    channel_mappings.delete(db, mapping_id)


def list_mappings(db: Session, integration_id) -> list[ChannelMapping]:
    return channel_mappings.list(db, integration_id)


def complete_setup(db: Session, integration_id, instance_id, line_id, line_name: str | None = None) -> dict:
    """Activate the connector on the line and store the mapping, reporting each separately."""
    line_id = coerce_line_id(line_id)
    result = {
        "line_id": line_id,
        "activation": {"ok": False, "error": None},
        "mapping": {"ok": False, "error": None, "mapping_id": None},
    }
    with integration_lock(db, integration_id) as integration:
        try:
            client = oauth.portal_client(db, integration)
            activation = apply_activation(client, integration, line_id, True)
            commit(db, integration)
            result["activation"] = {"ok": True, "error": None, "warnings": activation["warnings"]}
        except Bitrix24Error as exc:
            db.rollback()
            result["activation"] = {"ok": False, "error": exc.detail, "code": exc.code}

        try:
            mapping = channel_mappings.add(db, integration.id, instance_id, line_id, line_name)
            result["mapping"] = {"ok": True, "error": None, "mapping_id": mapping.id}
        except Bitrix24Error as exc:
            result["mapping"] = {"ok": False, "error": exc.detail, "code": exc.code, "mapping_id": None}

    result["success"] = result["activation"]["ok"] and result["mapping"]["ok"]
    result["partial"] = result["activation"]["ok"] != result["mapping"]["ok"]
    result["state"] = state.describe(integration)
    logger.info(
        "bitrix24_complete_setup integration_id=%s line_id=%s activated=%s mapped=%s",
        integration.id,
        line_id,
        result["activation"]["ok"],
        result["mapping"]["ok"],
    )
    return result
