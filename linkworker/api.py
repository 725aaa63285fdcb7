from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from config import link_config

from .accounts import AccountStoreError
from .context import SupervisorConflictError
from .manager import PairingCodeNotFoundError, build_manager
from .store import SessionStoreError

logger = logging.getLogger("linkworker.api")


class PairingStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(..., min_length=1, alias="ownerId")
    api_credential: SecretStr = Field(..., alias="apiCredential")


class PairingQuery(BaseModel):
    temp_token: str = Field(..., min_length=1)


def create_app() -> FastAPI:
    cfg = link_config()
    manager = build_manager(cfg)
    admin_token = cfg.admin_token or ""

    app = FastAPI(title="linkworker")
    app.state.link_manager = manager

    NO_STORE_HEADERS = {
        "Cache-Control": "no-store, no-cache, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }

    def _json(body: dict[str, Any], status_code: int = 200) -> JSONResponse:
        return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))

    def _enforce_admin(request: Request, route: str) -> JSONResponse | None:
        if not admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != admin_token:
            logger.warning("event=admin_token_invalid route=%s", route)
            return _json({"error": "not_authorized"}, 401)
        return None

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {"linked": 0, "pairing": 0, "supervisors": 0}

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        summary = await manager.start()
        logger.info(
            "stage=startup restored=%s failed=%s", summary.restored, summary.failed
        )
        if cfg.api_id <= 0 or not cfg.api_hash:
            logger.warning("telegram api credentials are not configured")

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.post("/pairing/start")
    async def pairing_start(request: Request, payload: PairingStartRequest):
        denied = _enforce_admin(request, "pairing_start")
        if denied is not None:
            return denied
        try:
            temp_token = await manager.start_pairing(
                payload.owner_id, payload.api_credential.get_secret_value()
            )
        except SupervisorConflictError:
            return _json({"error": "pairing_in_progress"}, 409)
        except AccountStoreError as exc:
            logger.error("stage=pairing_start_failed owner_id=%s error=%s", payload.owner_id, exc)
            return _json({"error": "store_unavailable"}, 503)
        return _json({"ok": True, "temp_token": temp_token, "state": "pairing"}, 202)

    @app.get("/pairing/status")
    async def pairing_status(request: Request, query: PairingQuery = Depends()):
        denied = _enforce_admin(request, "pairing_status")
        if denied is not None:
            return denied
        status = manager.get_pairing_status(query.temp_token)
        if status is None:
            return _json({"error": "pairing_not_found"}, 404)
        return _json(
            {
                "temp_token": status.temp_token,
                "state": status.state,
                "identity_token": status.identity_token,
                "last_error": status.last_error,
                "updated_at": status.updated_at,
                "code_ready": manager.get_pairing_code(query.temp_token) is not None,
            }
        )

    @app.get("/pairing/code")
    async def pairing_code(request: Request, query: PairingQuery = Depends()):
        denied = _enforce_admin(request, "pairing_code")
        if denied is not None:
            return denied
        code = manager.get_pairing_code(query.temp_token)
        if code is None:
            return _json({"error": "code_not_found"}, 404)
        return _json({"temp_token": query.temp_token, "code": code})

    @app.get("/pairing/qr.png")
    async def pairing_qr_png(request: Request, query: PairingQuery = Depends()):
        denied = _enforce_admin(request, "pairing_qr_png")
        if denied is not None:
            return denied
        try:
            blob = manager.get_pairing_qr_png(query.temp_token)
        except PairingCodeNotFoundError:
            return _json({"error": "code_not_found"}, 404)
        return Response(content=blob, media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.get("/sessions/{identity_token}")
    async def session_info(request: Request, identity_token: str):
        denied = _enforce_admin(request, "session_info")
        if denied is not None:
            return denied
        try:
            account = await manager.accounts.get_account(identity_token)
        except AccountStoreError as exc:
            logger.error("stage=session_info_failed identity=%s error=%s", identity_token, exc)
            return _json({"error": "store_unavailable"}, 503)
        live = manager.get_live_connection(identity_token) is not None
        if account is None and not live:
            return _json({"error": "session_not_found"}, 404)
        return _json(
            {
                "identity_token": identity_token,
                "live": live,
                "is_connected": bool(account and account.is_connected),
                "phone_id": account.phone_id if account else None,
                "display_name": account.display_name if account else None,
            }
        )

    @app.delete("/sessions/{identity_token}")
    async def session_delete(request: Request, identity_token: str):
        denied = _enforce_admin(request, "session_delete")
        if denied is not None:
            return denied
        try:
            removed = await manager.delete_tenant(identity_token)
        except (SessionStoreError, AccountStoreError) as exc:
            logger.error("stage=session_delete_failed identity=%s error=%s", identity_token, exc)
            return _json({"error": "store_unavailable"}, 503)
        return _json({"ok": True, "removed": removed})

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return {
            "ok": True,
            "linked_count": int(stats.get("linked", 0) or 0),
            "pairing_count": int(stats.get("pairing", 0) or 0),
            "supervisors": int(stats.get("supervisors", 0) or 0),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
