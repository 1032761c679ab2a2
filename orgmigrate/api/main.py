"""FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .routes import migrations, orgs, templates


def create_app() -> FastAPI:
    app = FastAPI(
        title="Org Migration API",
        description="API for template-driven migrations between CRM orgs",
        version=__version__,
    )

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
    app.include_router(migrations.router, prefix="/api/migrations", tags=["migrations"])
    app.include_router(orgs.router, prefix="/api/orgs", tags=["orgs"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
