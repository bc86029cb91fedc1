"""
Integration API Entrypoint - Thin API with Command Dispatch

Inbound HL7v2 and FHIR endpoints authenticate by x-api-key; the admin
endpoints authenticate the caller by a JWT bearer token carrying
`sub` and `role` claims.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine
from fastapi.concurrency import run_in_threadpool

import config
from lab_integration import views
from lab_integration.adapters import orm
from lab_integration.domain.commands import SyncPatientData
from lab_integration.domain.exceptions import (
    InvalidSyncWindowError,
    NotFoundError,
    PermissionDeniedError,
)
from lab_integration.service_layer import messagebus, router, sync
from lab_integration.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Lab Integration API",
    description="HL7v2 / FHIR message integration engine",
    version="1.0.0"
)


# Initialize database and ORM mappers (Cosmic Python pattern)
@app.on_event("startup")
async def startup_event():
    config.get_jwt_settings()
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("Integration database initialized")


def get_uow() -> AbstractUnitOfWork:
    return SqlAlchemyUnitOfWork()


# ---------- Caller authentication ----------

class Caller(BaseModel):
    sub: str
    role: str = ""


def get_caller(authorization: Optional[str] = Header(None)) -> Caller:
    """Decode the bearer token of an admin request."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    settings = config.get_jwt_settings()
    try:
        claims = jwt.decode(token, settings["secret_key"], algorithms=[settings["algorithm"]])
    except JWTError as e:
        logger.warning(f"Rejected caller token: {e}")
        raise HTTPException(status_code=401, detail="Invalid bearer token") from e

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return Caller(sub=claims["sub"], role=str(claims.get("role") or ""))


def _error(status_code: int, code: str, e: Exception) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": str(e)})


# ---------- Request/Response models ----------

class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    integration_id: str = Field(alias="integrationId")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")


class SyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    total_records: int = Field(alias="totalRecords")
    synced_count: int = Field(alias="syncedCount")
    error_count: int = Field(alias="errorCount")


def _to_http(response: router.InboundResponse) -> Response:
    if response.media_type == router.TEXT_PLAIN:
        return PlainTextResponse(response.body, status_code=response.status_code)
    return JSONResponse(response.body, status_code=response.status_code, media_type=response.media_type)


# ---------- Endpoints ----------

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "lab-integration-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/hl7")
async def receive_hl7(request: Request, uow: AbstractUnitOfWork = Depends(get_uow)):
    """Receive a raw HL7v2 message; answers with an ACK, NACK or RSP."""
    body = await request.body()
    response = await run_in_threadpool(router.receive_hl7, body, request.headers.get("x-api-key"), uow)
    return _to_http(response)


@app.post("/fhir")
async def receive_fhir(request: Request, uow: AbstractUnitOfWork = Depends(get_uow)):
    """Receive a FHIR JSON resource; answers with an OperationOutcome."""
    body = await request.body()
    response = await run_in_threadpool(router.receive_fhir, body, request.headers.get("x-api-key"), uow)
    return _to_http(response)


@app.post("/api/v1/integrations/sync", response_model=SyncResponse)
def sync_patients(
    request: SyncRequest,
    caller: Caller = Depends(get_caller),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Re-send the tenant's patients modified in [startDate, endDate] to one integration.

    Restricted to ADMIN and INTEGRATION_MANAGER callers.
    """
    cmd = SyncPatientData(
        integration_id=request.integration_id,
        start_date=request.start_date,
        end_date=request.end_date,
        performed_by=caller.sub,
        role=caller.role,
    )
    try:
        [summary] = messagebus.handle(cmd, uow)
    except PermissionDeniedError as e:
        raise _error(403, "permission-denied", e) from e
    except NotFoundError as e:
        raise _error(404, "not-found", e) from e
    except InvalidSyncWindowError as e:
        raise _error(400, "invalid-argument", e) from e

    return SyncResponse(
        success=summary.success,
        total_records=summary.total_records,
        synced_count=summary.synced_count,
        error_count=summary.error_count,
    )


@app.get("/api/v1/integrations/{integration_id}/logs")
def get_integration_logs(
    integration_id: str,
    limit: int = 100,
    caller: Caller = Depends(get_caller),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Delivery failures and sync summaries of one integration."""
    try:
        sync.check_sync_role(caller.role)
        return views.integration_logs(integration_id, uow, limit=limit)
    except PermissionDeniedError as e:
        raise _error(403, "permission-denied", e) from e
    except NotFoundError as e:
        raise _error(404, "not-found", e) from e


def main():
    import uvicorn

    uvicorn.run(app, host=os.environ.get("API_HOST", "0.0.0.0"), port=int(os.environ.get("API_PORT", 8000)))


if __name__ == "__main__":
    main()
