# imagesort/api/deps.py
from typing import Iterator

from fastapi import Request

from imagesort.core.config import Settings
from imagesort.repositories.db import CatalogStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Iterator[CatalogStore]:
    """One catalog handle per request, closed when the response is done."""
    with CatalogStore(request.app.state.settings.db_path) as store:
        yield store
