"""
Access Router
=============

Unauthenticated endpoints used during registration:
- POST /api/access/verify        consume a one-time invitation code
- POST /api/access/email-exists  does the identity provider know this email
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lunachat.auth.identity import IdentityClient
from lunachat.clients import get_identity
from lunachat.services.access_gate import access_gate

logger = logging.getLogger(__name__)

router = APIRouter()


class VerifyAccessRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    accessCode: str = Field(..., min_length=1, max_length=128)


class VerifyAccessResponse(BaseModel):
    verified: bool
    error: Optional[str] = None


class EmailExistsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class EmailExistsResponse(BaseModel):
    exists: bool


@router.post(
    "/verify",
    response_model=VerifyAccessResponse,
    summary="Verify invitation code",
    responses={400: {"model": VerifyAccessResponse}},
)
async def verify_access_code(body: VerifyAccessRequest):
    result = access_gate.verify(body.email, body.accessCode)
    if not result.verified:
        logger.info("Access code rejected: %s", result.error)
        return JSONResponse(status_code=400, content={"verified": False, "error": result.error})
    return VerifyAccessResponse(verified=True)


@router.post("/email-exists", response_model=EmailExistsResponse, summary="Check whether an email is registered")
async def email_exists(body: EmailExistsRequest, identity: IdentityClient = Depends(get_identity)):
    return EmailExistsResponse(exists=await identity.email_exists(body.email.strip()))
