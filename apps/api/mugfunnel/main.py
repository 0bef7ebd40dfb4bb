from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mugfunnel.api.v1.routes import admin, analytics, flags, funnel, health, leads, quota
from mugfunnel.core.config import get_settings
from mugfunnel.core.logging import configure_logging
from mugfunnel.db.pg.base import Base
from mugfunnel.db.pg import models as _models  # noqa: F401
from mugfunnel.db.pg.session import engine
from mugfunnel.services.funnel.runtime import get_reaper, reset_runtime

configure_logging()
settings = get_settings()
app = FastAPI(title=settings.app_name)
allowed_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    if get_settings().funnel_reaper_enabled:
        get_reaper().start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    reset_runtime()


app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(funnel.router, prefix=settings.api_prefix)
app.include_router(quota.router, prefix=settings.api_prefix)
app.include_router(leads.router, prefix=settings.api_prefix)
app.include_router(analytics.router, prefix=settings.api_prefix)
app.include_router(admin.router, prefix=settings.api_prefix)
app.include_router(flags.router, prefix=settings.api_prefix)
