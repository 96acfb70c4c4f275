"""
FastAPI application exposing the credit endpoints.

Clients send `X-Device-Id` on every request and `X-Identity-Id` once the
user has signed in with the identity provider.

Run:
  uvicorn lead_credits.api.app:app --reload
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from .router import Services, get_services, router


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Lead lookup credits")
    app.include_router(router)
    if services is not None:
        app.dependency_overrides[get_services] = lambda: services

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
