from textwrap import dedent
import logging
from typing import Optional

import pydantic
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from fastapi.middleware.cors import CORSMiddleware

from finder_api.errors import (
    FinderError,
    handle_broad_exceptions,
    handle_finder_errors,
    handle_pydantic_validation_errors,
)
from finder_api.routers.finder import router as finder_router
from finder_api.routers.health import router as health_router
from finder_api.routers.public import router as public_router
from finder_api.config.settings import Settings, get_settings
from finder_api.services.links import PublicLinks
from finder_api.storage.registry import StorageRegistry, build_registry

# Set up logging
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, registry: Optional[StorageRegistry] = None) -> FastAPI:
    """Create a FastAPI application."""
    settings = settings or get_settings()
    registry = registry or build_registry(settings)

    app = FastAPI(
        title="Finder API",
        summary="File manager backend over pluggable storages",
        version="v1",
        description=dedent(
            """\
        Every file-manager operation goes through one endpoint, selected by the `q` query parameter.

        | Parameter | Notes |
        | --- | --- |
        | `q` | Command: `index`, `upload`, `move`, `archive`, ... |
        | `adapter` | Storage key, defaults to the first configured storage |
        | `path` | Current directory, or the target file |
        """
        ),
        docs_url="/docs",
        generate_unique_id_function=custom_generate_unique_id,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=settings.cors_allowed_methods,
        allow_headers=settings.cors_allowed_headers,
        max_age=settings.cors_max_age,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.public_links = PublicLinks(settings.public_links, registry.resolver)
    logger.info(f"Serving storages {list(registry)} at {settings.api_path}")

    app.include_router(finder_router, prefix=settings.api_path)
    app.include_router(public_router)
    app.include_router(health_router, tags=["health"])

    app.add_exception_handler(
        exc_class_or_status_code=FinderError,
        handler=handle_finder_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=RequestValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.middleware("http")(handle_broad_exceptions)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"
