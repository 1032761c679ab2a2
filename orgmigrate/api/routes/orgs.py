"""Org connection endpoints: token health and OAuth."""

import secrets

from fastapi import APIRouter, Depends, HTTPException

from ...exceptions import AuthError, ConnectivityError
from ...orchestrator import ServiceContainer
from ...services.oauth import build_authorization_url, generate_code_verifier
from ..dependencies import get_container
from ..models import AuthorizeResponse, OAuthExchangeRequest

router = APIRouter()


@router.get("/token-health")
def token_health(container: ServiceContainer = Depends(get_container)):
    """Refresh metadata per org; never token values."""
    return container.token_manager.health_report()


@router.get("/oauth/authorize", response_model=AuthorizeResponse)
async def authorize_url(org_type: str = "production", container: ServiceContainer = Depends(get_container)):
    """Start a PKCE authorization; the caller keeps the verifier for the exchange."""
    if org_type not in ("production", "sandbox"):
        raise HTTPException(status_code=400, detail="org_type must be production or sandbox")
    verifier = generate_code_verifier()
    state = secrets.token_urlsafe(16)
    return AuthorizeResponse(
        authorization_url=build_authorization_url(container.settings, org_type, verifier, state=state),
        code_verifier=verifier,
        state=state,
    )


@router.post("/{org_id}/oauth/exchange")
def exchange_code(org_id: str, data: OAuthExchangeRequest, container: ServiceContainer = Depends(get_container)):
    """Complete the authorization-code exchange; re-arms an org that needed reconnecting."""
    try:
        record = container.token_manager.exchange_authorization_code(
            org_id, data.code, data.code_verifier, org_type=data.org_type
        )
    except AuthError as e:
        raise HTTPException(status_code=401, detail=e.to_dict())
    except ConnectivityError as e:
        raise HTTPException(status_code=502, detail=e.to_dict())
    return {"status": "connected", "org": record.health()}
