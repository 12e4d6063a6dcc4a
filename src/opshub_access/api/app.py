"""FastAPI application factory for the access API."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from opshub_access import __version__
from opshub_access.api.dependencies import init_auth
from opshub_access.api.routers import bindings, clusters, credentials, users
from opshub_access.errors import (
    AccessError,
    AlreadyBoundError,
    CredentialMaterialMissingError,
    DeadlineExceededError,
    InvalidBindingError,
    LedgerError,
    LedgerInconsistencyError,
    NotBoundError,
    NotGrantedError,
    ServiceAccountNotFoundError,
    UnknownClusterError,
    UnknownUserError,
    UpstreamUnavailableError,
)
from opshub_access.service import AccessService

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases.
ERROR_STATUS: list[tuple[type[AccessError], int]] = [
    (NotGrantedError, 403),
    (AlreadyBoundError, 409),
    (NotBoundError, 404),
    (UnknownClusterError, 404),
    (UnknownUserError, 404),
    (ServiceAccountNotFoundError, 404),
    (InvalidBindingError, 400),
    (UpstreamUnavailableError, 502),
    (CredentialMaterialMissingError, 502),
    (LedgerInconsistencyError, 500),
    (LedgerError, 500),
    (DeadlineExceededError, 504),
]


def status_for(exc: AccessError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


async def _access_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, AccessError)
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(service: AccessService | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    *service* defaults to one built from the auto-discovered
    ``opshub-access.yaml``; it is injected into each router via its
    ``init_router()`` function.
    """
    if service is None:
        service = AccessService.from_config()

    app = FastAPI(
        title="OpsHub Access",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.add_exception_handler(AccessError, _access_error_handler)

    init_auth(service)

    credentials.init_router(service)
    bindings.init_router(service)
    clusters.init_router(service)
    users.init_router(service)

    app.include_router(credentials.router)
    app.include_router(bindings.router)
    app.include_router(clusters.router)
    app.include_router(users.router)

    return app
