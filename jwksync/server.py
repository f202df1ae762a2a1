"""
jwksync JWKS endpoint.

Serves the published key set straight from the non-secrets partition so
verifiers can fetch it over HTTP:

    GET /status                  - Health check
    GET /.well-known/jwks.json   - The published JWKS
    GET /keys/current/{family}   - Current kid of a family
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from jwksync import __version__
from jwksync.errors import JWKSCorruptError, StoreError
from jwksync.jwks import PRIVATE_MEMBERS, parse_jwks
from jwksync.keys import KeyFamily
from jwksync.naming import JWKS_ENTRY
from jwksync.rotation import KeyRotationManager
from jwksync.store import PartitionedKeyStore

logger = logging.getLogger(__name__)

JWKS_PATH = "/.well-known/jwks.json"


class StatusResponse(BaseModel):
    status: str
    version: str


class CurrentKidResponse(BaseModel):
    family: str
    kid: str
    rotated_at: Optional[int] = None


def create_app(store: PartitionedKeyStore) -> FastAPI:
    """Build the endpoint app over ``store``."""
    app = FastAPI(title="jwksync", version=__version__)
    rotation = KeyRotationManager(store)

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        return StatusResponse(status="ok", version=__version__)

    @app.get(JWKS_PATH)
    async def published_jwks() -> dict:
        try:
            raw = await store.get_public(JWKS_ENTRY)
        except StoreError as e:
            logger.error(f"Cannot read JWKS: {e}")
            raise HTTPException(status_code=503, detail="Key store unavailable")
        if raw is None:
            raise HTTPException(status_code=503, detail="No JWKS has been published")
        try:
            jwks = parse_jwks(raw)
        except JWKSCorruptError as e:
            logger.error(f"Stored JWKS is corrupt: {e}")
            raise HTTPException(status_code=503, detail="Published JWKS is corrupt")

        keys = []
        for record in jwks["keys"]:
            if PRIVATE_MEMBERS.intersection(record):
                logger.error(f"Withholding JWK {record.get('kid')}: it carries private members")
                continue
            keys.append(record)
        return {"keys": keys}

    @app.get("/keys/current/{family}", response_model=CurrentKidResponse)
    async def current_kid(family: str) -> CurrentKidResponse:
        parsed = KeyFamily.parse(family, strict=False)
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Unknown key family: {family}")
        try:
            current = await rotation.current_kid(parsed)
        except StoreError as e:
            logger.error(f"Cannot read current kid: {e}")
            raise HTTPException(status_code=503, detail="Key store unavailable")
        if current is None:
            raise HTTPException(status_code=404, detail=f"No {parsed.value} key provisioned")
        return CurrentKidResponse(family=parsed.value, kid=current.kid, rotated_at=current.rotated_at)

    return app
