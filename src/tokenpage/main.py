"""TokenPage FastAPI application."""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from tokenpage.config import Settings, settings as default_settings
from tokenpage.core.errors import NotFoundError, PageError, ServiceError, ValidationError
from tokenpage.core.services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None, services: Services | None = None
) -> FastAPI:
    """Build the application.

    When ``services`` is given it is used as-is and the lifespan creates
    nothing; otherwise collaborators are built from settings on startup.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: own the shared HTTP client."""
        logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
        if services is not None:
            yield
            return
        async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
            app.state.services = build_services(settings, client)
            logger.info("Record store at %s", settings.data_dir)
            yield

    app = FastAPI(
        title=settings.app_title,
        debug=settings.debug,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.exception_handler(PageError)
    async def page_error_handler(request: Request, exc: PageError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def get_services(request: Request) -> Services:
        svc = getattr(request.app.state, "services", None)
        if svc is None:
            raise ServiceError("Application not initialized")
        return svc

    def get_credential(request: Request) -> str | None:
        """Identity credential from the request cookie."""
        return request.cookies.get(settings.identity_cookie) or None

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ========== Page store ==========

    @app.get("/api/page-store")
    async def get_pages(
        slug: str | None = None,
        walletAddress: str | None = None,
        svc: Services = Depends(get_services),
        credential: str | None = Depends(get_credential),
    ):
        """Fetch one page by slug, or the caller's own pages."""
        if walletAddress:
            pages = await svc.pages_for_caller(walletAddress, credential)
            return {"pages": [page.to_wire() for page in pages]}
        if slug:
            record, is_owner = await svc.view_page(slug, credential)
            return {"record": record.to_wire(), "isOwner": is_owner}
        raise ValidationError("Slug or wallet address is required")

    @app.post("/api/page-store")
    async def save_page(
        payload: dict[str, Any] = Body(...),
        svc: Services = Depends(get_services),
        credential: str | None = Depends(get_credential),
    ):
        """Create a page or update one the caller owns."""
        record = await svc.save_page(payload, credential)
        return {"success": True, "slug": record.slug}

    @app.patch("/api/page-store")
    async def patch_page(
        payload: dict[str, Any] = Body(...),
        svc: Services = Depends(get_services),
        credential: str | None = Depends(get_credential),
    ):
        """Merge-update an existing page."""
        record = await svc.patch_page(payload, credential)
        return {"success": True, "updatedAt": record.to_wire().get("updatedAt")}

    @app.delete("/api/page-store")
    async def delete_page(
        payload: dict[str, Any] = Body(...),
        svc: Services = Depends(get_services),
        credential: str | None = Depends(get_credential),
    ):
        await svc.delete_page(payload, credential)
        return {"success": True}

    # ========== Token gate ==========

    @app.post("/api/access-private-content")
    async def access_private_content(
        payload: dict[str, Any] = Body(...),
        svc: Services = Depends(get_services),
        credential: str | None = Depends(get_credential),
    ):
        """Check the caller's token balance and sign the private resource."""
        signed, state = await svc.unlock_private_content(payload, credential)
        return {**signed.to_wire(), "state": state.value}

    # ========== Maintenance ==========

    @app.post("/api/wallet-index/reconcile")
    async def reconcile_wallet_index(
        request: Request, svc: Services = Depends(get_services)
    ):
        """Repair the wallet index from the stored pages."""
        if not settings.admin_token:
            raise NotFoundError("Not found")
        supplied = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if not hmac.compare_digest(supplied.encode(), settings.admin_token.encode()):
            raise NotFoundError("Not found")
        report = await svc.reconcile_index()
        return report.to_wire()

    return app


app = create_app()
