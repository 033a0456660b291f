import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    session_factory = request.app.state.db_session_factory
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_unavailable", extra={"extra": {"error_type": type(exc).__name__}})
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "error"})
    return JSONResponse(status_code=200, content={"status": "ok", "database": "ok"})
