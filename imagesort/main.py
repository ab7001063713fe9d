# imagesort/main.py: app wiring only, no endpoints here.
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imagesort.api.routes import archive, catalog
from imagesort.core.config import Settings, load_settings


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(title="ImageSort API", version="0.1")
    app.state.settings = settings or load_settings()

    if app.state.settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app.state.settings.cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(catalog.api_router, prefix="/api")
    app.include_router(archive.public_router)   # /archive/* and /thumb/archive/*
    return app
