from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from app.api.deps import get_callback_params, get_db
from app.schemas.bitrix24 import (
    ActionRequest,
    ChannelMappingCreate,
    ChannelMappingRead,
    IntegrationRead,
    LinkingTokenCreate,
    LinkingTokenRead,
)
from app.services.bitrix24 import actions, channels, identity, install, oauth
from app.services.bitrix24.locks import load_integration
from app.services.bitrix24.mappings import channel_mappings

router = APIRouter(prefix="/bitrix24", tags=["bitrix24"])


@router.post("/actions", response_model=dict)
def run_action(payload: ActionRequest, db: Session = Depends(get_db)):
    return actions.dispatch(db, payload.action, payload.params)


@router.post("/install", response_model=dict)
def install_callback(params: dict = Depends(get_callback_params), db: Session = Depends(get_db)):
    """Portal lifecycle callback: ONAPPINSTALL, ONAPPUNINSTALL, ONAPPTEST."""
    return install.handle_install(db, params)


@router.get("/oauth/callback", response_model=IntegrationRead)
def oauth_callback(
    code: str = Query(min_length=1),
    state: str | None = None,
    domain: str | None = None,
    db: Session = Depends(get_db),
):
    return oauth.exchange_code(db, domain or state or "", code)


@router.post("/placement", response_class=PlainTextResponse)
def placement(params: dict = Depends(get_callback_params), db: Session = Depends(get_db)):
    """SETTING_CONNECTOR placement; the portal expects the literal text ``successfully``."""
    channels.handle_placement(db, params)
    return PlainTextResponse("successfully")


@router.post("/linking-tokens", response_model=LinkingTokenRead, status_code=status.HTTP_201_CREATED)
def create_linking_token(payload: LinkingTokenCreate, db: Session = Depends(get_db)):
    return identity.issue_linking_token(db, payload.workspace_id, payload.ttl_days)


@router.get("/integrations/{integration_id}", response_model=IntegrationRead)
def get_integration(integration_id: str, db: Session = Depends(get_db)):
    return load_integration(db, integration_id)


@router.get("/integrations/{integration_id}/mappings", response_model=list[ChannelMappingRead])
def list_mappings(integration_id: str, db: Session = Depends(get_db)):
    return channel_mappings.list(db, integration_id)


@router.post(
    "/integrations/{integration_id}/mappings",
    response_model=ChannelMappingRead,
    status_code=status.HTTP_201_CREATED,
)
def create_mapping(integration_id: str, payload: ChannelMappingCreate, db: Session = Depends(get_db)):
    return channel_mappings.add(db, integration_id, payload.instance_id, payload.line_id, payload.line_name)


@router.delete("/mappings/{mapping_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_mapping(mapping_id: str, db: Session = Depends(get_db)):
    channel_mappings.delete(db, mapping_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
