from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)

from mailshare_admin.api.schemas import (
    AuditEntryResponse,
    AuditLogResponse,
    Envelope,
    InitRequest,
    InitResponse,
    LogoutResponse,
    PublicSettingsResponse,
    RevokeRequest,
    RevokeResponse,
    SessionListResponse,
    SessionResponse,
    SettingsUpdateRequest,
    SetupRequest,
    SetupResponse,
    SystemSettingsResponse,
    TokenResponse,
    VerifyRequest,
)
from mailshare_admin.logging import get_logger
from mailshare_admin.service.auth import IdentityStatus
from mailshare_admin.service.audit import MAX_RECENT_ENTRIES
from mailshare_admin.service.errors import ForbiddenError, ServiceError
from mailshare_admin.service.events import ends_session
from mailshare_admin.service.gate import AdminContext
from mailshare_admin.service.runtime import get_runtime
from mailshare_admin.service.sessions import normalize_client_ip
from mailshare_admin.storage.models import AuditAction

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_TRUTHY_HEADER_VALUES = {"1", "true", "yes", "on"}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> str:
    return normalize_client_ip(
        request.headers.get("x-forwarded-for"),
        request.client.host if request.client else None,
    )


def _is_background_poll(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY_HEADER_VALUES


async def get_admin(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_background_poll: Optional[str] = Header(None, alias="X-Background-Poll"),
) -> AdminContext:
    runtime = get_runtime()
    return await runtime.gate.authenticate(
        authorization,
        ip=_client_ip(request),
        background=_is_background_poll(x_background_poll),
    )


@router.post("/admin/auth/init", response_model=Envelope, tags=["admin-auth"])
async def init_admin_auth(body: InitRequest, request: Request):
    """Identity check: which login step the given email should see next.

    The first email ever presented becomes the sole administrator.
    """
    runtime = get_runtime()
    status = await runtime.auth.check_identity(body.email, ip=_client_ip(request))
    if status is IdentityStatus.FORBIDDEN:
        raise ForbiddenError(
            "this email is not the registered administrator",
            detail={"status": IdentityStatus.FORBIDDEN.value},
        )
    return Envelope(status="ok", data=InitResponse(status=status.value))


@router.post("/admin/auth/setup", response_model=Envelope, tags=["admin-auth"])
async def setup_admin_totp(body: SetupRequest):
    runtime = get_runtime()
    result = runtime.auth.begin_enrollment(body.email)
    return Envelope(
        status="ok",
        data=SetupResponse(
            secret=result.secret,
            otpauth_url=result.otpauth_url,
            qr_code=result.qr_code,
        ),
    )


@router.post("/admin/auth/verify", response_model=Envelope, tags=["admin-auth"])
async def verify_admin_totp(
    body: VerifyRequest,
    request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.code,
        fingerprint=body.fingerprint_id,
        ip=_client_ip(request),
        user_agent=user_agent or "",
    )
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=result.token.token,
            token_type="bearer",
            expires_at=result.token.expires_at,
            session_id=result.token.session_id,
        ),
    )


@router.post("/admin/auth/logout", response_model=Envelope, tags=["admin-auth"])
async def logout_admin(request: Request, ctx: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    runtime.registry.deactivate(ctx.session_id)
    await runtime.audit.record(
        AuditAction.LOGOUT, ctx.admin_id, ctx.email, "Manual logout", _client_ip(request)
    )
    await runtime.audit.notify_session(
        "logout", ctx.email, reason="manual", session_id=ctx.session_id
    )
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/admin/sessions", response_model=Envelope, tags=["admin-sessions"])
async def list_admin_sessions(ctx: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    items = [
        SessionResponse(
            id=sess.id,
            email=sess.email,
            device_name=sess.device_name,
            device_key_kind=sess.device_key_kind,
            ip=sess.ip,
            user_agent=sess.user_agent,
            created_at=sess.created_at,
            last_seen=sess.last_seen,
            current=sess.id == ctx.session_id,
        )
        for sess in runtime.registry.list_active()
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.post("/admin/sessions/revoke", response_model=Envelope, tags=["admin-sessions"])
async def revoke_admin_session(
    body: RevokeRequest, request: Request, ctx: AdminContext = Depends(get_admin)
):
    """Step-up revocation of any session, including the caller's own."""
    if not body.password:
        raise _http_error("validation_error", "password is required", status_code=400)
    runtime = get_runtime()
    target = runtime.registry.get(body.session_id)
    runtime.revocation.revoke_session(ctx.admin_id, body.session_id, body.password)
    target_label = target.device_name if target else body.session_id
    await runtime.audit.record(
        AuditAction.SESSION_REVOKED,
        ctx.admin_id,
        ctx.email,
        f"Revoked session on {target_label}",
        _client_ip(request),
    )
    await runtime.audit.notify_session(
        "logout",
        target.email if target else ctx.email,
        reason="revoked",
        session_id=body.session_id,
    )
    return Envelope(status="ok", data=RevokeResponse(session_id=body.session_id))


@router.get("/admin/logs", response_model=Envelope, tags=["admin-audit"])
async def list_audit_logs(
    limit: int = Query(MAX_RECENT_ENTRIES, ge=1, le=MAX_RECENT_ENTRIES),
    ctx: AdminContext = Depends(get_admin),
):
    runtime = get_runtime()
    items = [
        AuditEntryResponse(**entry.to_dict()) for entry in runtime.audit.recent(limit)
    ]
    return Envelope(status="ok", data=AuditLogResponse(items=items))


@router.get("/admin/settings", response_model=Envelope, tags=["admin-settings"])
async def get_system_settings(ctx: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    settings = runtime.store.get_system_settings()
    return Envelope(status="ok", data=SystemSettingsResponse(**settings.to_dict()))


@router.patch("/admin/settings", response_model=Envelope, tags=["admin-settings"])
async def update_system_settings(
    body: SettingsUpdateRequest,
    request: Request,
    ctx: AdminContext = Depends(get_admin),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise _http_error("validation_error", "no settings to update", status_code=400)
    runtime = get_runtime()
    settings = runtime.store.update_system_settings(changes)
    await runtime.audit.record(
        AuditAction.SETTINGS_CHANGED,
        ctx.admin_id,
        ctx.email,
        "Updated settings: " + ", ".join(sorted(changes)),
        _client_ip(request),
    )
    return Envelope(status="ok", data=SystemSettingsResponse(**settings.to_dict()))


@router.get("/settings/public", response_model=Envelope, tags=["settings"])
async def get_public_settings():
    runtime = get_runtime()
    settings = runtime.store.get_system_settings()
    return Envelope(status="ok", data=PublicSettingsResponse(**settings.public_view()))


@router.websocket("/admin/events")
async def admin_events(ws: WebSocket):
    """Stream session_update and audit_log events to an authenticated dashboard.

    The token comes from the ``token`` query parameter or, failing that, the
    first JSON message (``{"access_token": ...}``). The stream closes with 4401
    after the logout event for its own session is delivered.
    """
    runtime = get_runtime()
    await ws.accept()
    try:
        token = ws.query_params.get("token")
        if not token:
            init = await ws.receive_json()
            token = init.get("access_token") if isinstance(init, dict) else None
        ip = normalize_client_ip(
            ws.headers.get("x-forwarded-for"), ws.client.host if ws.client else None
        )
        ctx = await runtime.gate.authenticate(
            f"Bearer {token}" if token else None, ip=ip, background=True
        )
    except ServiceError as exc:
        logger.warning("admin_events_auth_failed", error_code=exc.error_code)
        await ws.close(code=4401)
        return
    except WebSocketDisconnect:
        return
    except ValueError:
        logger.warning("websocket_invalid_json")
        await ws.close(code=1003)
        return

    subscription = runtime.events.subscribe()
    logger.info("admin_events_subscribed", admin_id=ctx.admin_id, session_id=ctx.session_id)
    receiver = asyncio.create_task(_wait_for_disconnect(ws))
    try:
        await ws.send_json({"event": "ready", "data": {"session_id": ctx.session_id}})
        while not receiver.done():
            getter = asyncio.create_task(subscription.get())
            done, _ = await asyncio.wait(
                {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter not in done:
                getter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await getter
                break
            event = getter.result()
            await ws.send_json(event)
            if ends_session(event, ctx.session_id):
                logger.info("admin_events_session_ended", session_id=ctx.session_id)
                await ws.close(code=4401)
                break
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        receiver.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
            await receiver
        logger.info("admin_events_unsubscribed", session_id=ctx.session_id)


async def _wait_for_disconnect(ws: WebSocket) -> None:
    # Client messages after the handshake are ignored
    while True:
        message = await ws.receive()
        if message.get("type") == "websocket.disconnect":
            return
