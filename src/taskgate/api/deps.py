"""API dependencies."""

import logging
import secrets
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskgate.audit.sinks import InlineAuditSink
from taskgate.config import Environment, settings
from taskgate.db import base as db_base
from taskgate.engine import AuditSink
from taskgate.models import Actor, RequestMeta, Role

logger = logging.getLogger("taskgate.api")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with db_base.async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _insecure_dev() -> bool:
    return settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT


async def verify_api_key(
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> None:
    """
    Verify the shared API key.

    Accepts ``Authorization: Bearer <key>`` or ``X-API-Key``. Fails closed:
    without a configured key every request is rejected unless insecure dev
    mode is explicitly enabled.
    """
    if _insecure_dev():
        return

    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:]
    elif x_api_key:
        api_key = x_api_key

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Use Authorization: Bearer <key> or X-API-Key header",
        )

    if not settings.api_key:
        logger.error("SECURITY VIOLATION: No API key configured. Set TASKGATE_API_KEY.")
        raise HTTPException(
            status_code=503,
            detail="Server misconfigured: authentication not properly initialized",
        )

    if not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")


async def get_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
    x_actor_team_id: str | None = Header(None, alias="X-Actor-Team-ID"),
) -> Actor:
    """
    Identity of the caller, as asserted by the upstream gateway.

    Session issuance happens upstream; TaskGate only trusts these headers
    behind the API key.
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-ID header")
    if not x_actor_role:
        raise HTTPException(status_code=400, detail="Missing X-Actor-Role header")

    try:
        role = Role.parse(x_actor_role)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_actor_role}")

    return Actor(
        id=x_actor_id.strip(),
        role=role,
        team_id=(x_actor_team_id or "").strip() or None,
    )


async def get_request_meta(request: Request) -> RequestMeta:
    """Client metadata recorded with audit entries."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    elif request.client:
        ip_address = request.client.host
    else:
        ip_address = "unknown"

    return RequestMeta(
        ip_address=ip_address or "unknown",
        user_agent=request.headers.get("user-agent") or "unknown",
        method=request.method,
        url=str(request.url),
    )


async def get_audit_sink(request: Request) -> AuditSink:
    """Sink started by the application lifespan."""
    sink = getattr(request.app.state, "audit_sink", None)
    if sink is None:
        sink = InlineAuditSink()
        request.app.state.audit_sink = sink
    return sink


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set TASKGATE_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if not settings.allow_insecure_dev and not settings.api_key:
        raise RuntimeError(
            "SECURITY ERROR: TASKGATE_API_KEY is required unless "
            "TASKGATE_ALLOW_INSECURE_DEV=true in development."
        )

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - API key verification is DISABLED\n"
            "  - Actor headers are still required\n"
            "  - Set TASKGATE_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    else:
        logger.info(f"Authentication enabled: shared API key for {settings.env.value}")
