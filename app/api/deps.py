from typing import Annotated, Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.core.security import Actor, decode_access_token
from app.services.gst_einvoice_client import GSTEInvoiceClient


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()

_einvoice_client: Optional[GSTEInvoiceClient] = None


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Dependency to get the authenticated actor.

    Tokens are issued by the auth service; only the signature, expiry and
    subject are checked here.
    """
    actor = decode_access_token(credentials.credentials)
    if actor is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def get_einvoice_client() -> GSTEInvoiceClient:
    """
    Process-wide portal client.

    Shared so the cached auth token survives across requests.
    """
    global _einvoice_client
    if _einvoice_client is None:
        _einvoice_client = GSTEInvoiceClient.from_settings(settings)
    return _einvoice_client


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
DB = Annotated[AsyncSession, Depends(get_db)]
EInvoiceClient = Annotated[GSTEInvoiceClient, Depends(get_einvoice_client)]
