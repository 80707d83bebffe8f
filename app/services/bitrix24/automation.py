"""CRM automation robot and SMS provider registration.

Both objects only need to exist inside the portal; how they are used is
configured by portal users in the automation editor and the SMS channel
settings. Registration needs the ``bizproc`` and ``messageservice`` scopes,
which many installs do not grant, so a missing scope is reported as such.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.services.bitrix24 import oauth
from app.services.bitrix24.errors import RemoteApiError
from app.services.bitrix24.locks import commit, integration_lock
from app.services.bitrix24.urls import ROBOT_PATH, SMS_PATH, callback_url

logger = get_logger(__name__)

ROBOT_SCOPE_UNAVAILABLE = "robot scope unavailable"
SMS_SCOPE_UNAVAILABLE = "sms provider scope unavailable"

_ROBOT_GONE_ERRORS = {"ERROR_ACTIVITY_NOT_FOUND", "ERROR_ROBOT_NOT_FOUND"}
_SENDER_GONE_ERRORS = {"ERROR_SENDER_NOT_FOUND", "ERROR_PROVIDER_NOT_FOUND"}


def _robot_payload(handler: str) -> dict:
    return {
        "CODE": settings.bitrix24_robot_code,
        "HANDLER": handler,
        "AUTH_USER_ID": 1,
        "NAME": settings.bitrix24_robot_name,
        "DESCRIPTION": "Sends a WhatsApp message to the document's phone number",
        "USE_PLACEMENT": "N",
        "USE_SUBSCRIPTION": "N",
        "PROPERTIES": {
            "PhoneNumber": {
                "Name": "Phone number",
                "Description": "Phone number with country code",
                "Type": "string",
                "Required": "Y",
                "Default": "{=Document:PHONE}",
            },
            "Message": {
                "Name": "Message",
                "Type": "text",
                "Required": "Y",
            },
            "InstanceId": {
                "Name": "WhatsApp instance",
                "Description": "Leave empty to use the line's mapped instance",
                "Type": "string",
                "Required": "N",
            },
        },
        "RETURN_PROPERTIES": {
            "MessageId": {"Name": "Message ID", "Type": "string"},
            "Status": {"Name": "Status", "Type": "string"},
            "Error": {"Name": "Error", "Type": "string"},
        },
    }


def register_robot(db: Session, integration_id) -> dict:
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        handler = callback_url(ROBOT_PATH, integration=str(integration.id))
        try:
            client.call("bizproc.robot.add", _robot_payload(handler))
        except RemoteApiError as exc:
            if not exc.is_already_exists:
                integration.robot_registered = False
                integration.robot_error = ROBOT_SCOPE_UNAVAILABLE if exc.is_scope_error else exc.detail
                commit(db, integration)
                logger.warning(
                    "bitrix24_robot_register_failed integration_id=%s error=%s",
                    integration.id,
                    exc.remote_error or exc.detail,
                )
                raise
        integration.robot_registered = True
        integration.robot_error = None
        commit(db, integration)
    logger.info("bitrix24_robot_registered integration_id=%s", integration.id)
    return {"registered": True, "code": settings.bitrix24_robot_code}


def unregister_robot(db: Session, integration_id) -> dict:
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        try:
            client.call("bizproc.robot.delete", {"CODE": settings.bitrix24_robot_code})
        except RemoteApiError as exc:
            # A robot the portal no longer has is already in the desired state
            if exc.remote_error not in _ROBOT_GONE_ERRORS:
                raise
        integration.robot_registered = False
        integration.robot_error = None
        commit(db, integration)
    logger.info("bitrix24_robot_unregistered integration_id=%s", integration.id)
    return {"removed": True, "code": settings.bitrix24_robot_code}


def register_sms_provider(db: Session, integration_id) -> dict:
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        try:
            client.call(
                "messageservice.sender.add",
                {
                    "CODE": settings.bitrix24_sms_sender_code,
                    "TYPE": "SMS",
                    "NAME": settings.bitrix24_sms_sender_name,
                    "DESCRIPTION": "Sends CRM SMS messages through WhatsApp",
                    "HANDLER": callback_url(SMS_PATH, integration=str(integration.id)),
                },
            )
        except RemoteApiError as exc:
            if not exc.is_already_exists:
                integration.sms_provider_registered = False
                integration.sms_provider_error = SMS_SCOPE_UNAVAILABLE if exc.is_scope_error else exc.detail
                commit(db, integration)
                logger.warning(
                    "bitrix24_sms_provider_register_failed integration_id=%s error=%s",
                    integration.id,
                    exc.remote_error or exc.detail,
                )
                raise
        integration.sms_provider_registered = True
        integration.sms_provider_error = None
        commit(db, integration)
    logger.info("bitrix24_sms_provider_registered integration_id=%s", integration.id)
    return {"registered": True, "code": settings.bitrix24_sms_sender_code}


def unregister_sms_provider(db: Session, integration_id) -> dict:
    with integration_lock(db, integration_id) as integration:
        client = oauth.portal_client(db, integration)
        try:
            client.call("messageservice.sender.delete", {"CODE": settings.bitrix24_sms_sender_code})
        except RemoteApiError as exc:
            if exc.remote_error not in _SENDER_GONE_ERRORS:
                raise
        integration.sms_provider_registered = False
        integration.sms_provider_error = None
        commit(db, integration)
    logger.info("bitrix24_sms_provider_unregistered integration_id=%s", integration.id)
    return {"removed": True, "code": settings.bitrix24_sms_sender_code}
