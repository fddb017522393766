"""Central CORS configuration for the RideLog API."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ridelog.shared.config import Settings


# Development origins (dev environment only)
DEV_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "https://localhost:3000",
]


def get_allowed_origins(settings: Settings) -> list[str]:
    """Allowed CORS origins for the configured environment."""
    origins = []

    if settings.frontend_url:
        origins.append(settings.frontend_url.rstrip("/"))

    for origin in settings.cors_extra_origins:
        origin = origin.strip().rstrip("/")
        if origin and origin not in origins:
            origins.append(origin)

    if not settings.is_production:
        origins.extend(DEV_ORIGINS)

    return origins


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Add CORS middleware to a FastAPI app."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
