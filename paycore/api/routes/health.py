from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import text

from paycore.core.config import get_settings
from paycore.db.session import SessionLocal
from paycore.workers.celery_app import celery_app

router = APIRouter(tags=["health"])


def _check_result(error: str | None = None, **extra: Any) -> dict[str, Any]:
    if error is not None:
        return {"status": "failed", "error": error}
    return {"status": "ok", **extra}


async def _check_database() -> dict[str, Any]:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        return _check_result(str(exc))
    return _check_result()


async def _check_redis() -> dict[str, Any]:
    redis_client = Redis.from_url(get_settings().redis_url)
    try:
        if await redis_client.ping() is not True:
            return _check_result("unexpected redis ping response")
    except Exception as exc:
        return _check_result(str(exc))
    finally:
        await redis_client.aclose()
    return _check_result()


def _ping_celery_workers() -> dict[str, Any]:
    try:
        inspector = celery_app.control.inspect(timeout=1.0)
        replies = (inspector.ping() if inspector is not None else None) or {}
    except Exception as exc:
        return _check_result(str(exc))
    if not replies:
        return _check_result("no celery workers responded to ping")
    return _check_result(workers=len(replies))


async def _check_celery_worker() -> dict[str, Any]:
    return await asyncio.to_thread(_ping_celery_workers)


async def _collect_checks() -> dict[str, dict[str, Any]]:
    database, redis, celery = await asyncio.gather(
        _check_database(),
        _check_redis(),
        _check_celery_worker(),
    )
    return {"database": database, "redis": redis, "celery": celery}


def _checks_response(checks: dict[str, dict[str, Any]], *, ok_status: str, failed_status: str) -> JSONResponse:
    passed = all(check.get("status") == "ok" for check in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if passed else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": ok_status if passed else failed_status, "checks": checks},
    )


@router.get("/live")
async def live() -> dict[str, str]:
    return {"status": "live"}


@router.get("/health")
async def health() -> JSONResponse:
    return _checks_response(await _collect_checks(), ok_status="ok", failed_status="degraded")


@router.get("/ready")
async def ready() -> JSONResponse:
    return _checks_response(await _collect_checks(), ok_status="ready", failed_status="not_ready")
