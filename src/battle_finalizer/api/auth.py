"""Bearer-secret authorization for the pipeline endpoints."""

from __future__ import annotations

import hmac
import logging
from typing import Callable

from fastapi import HTTPException, Request

from battle_finalizer.config import PipelineConfig

log = logging.getLogger("bf.api.auth")


def bearer_matches(request: Request, secret: str | None) -> bool:
    if not secret:
        return False
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(token.strip().encode(), secret.encode())


def require_auth(cfg: PipelineConfig, allow_scheduler: bool = False) -> Callable[[Request], None]:
    """FastAPI dependency: bearer secret, or the trusted scheduler header where allowed.

    With no secret configured every call is rejected.
    """

    def dependency(request: Request) -> None:
        if bearer_matches(request, cfg.api_secret):
            return
        if (
            allow_scheduler
            and cfg.api_secret
            and request.headers.get(cfg.scheduler_header) == cfg.scheduler_header_value
        ):
            return
        log.warning("AUTH_REJECT │ %s %s", request.method, request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")

    return dependency
