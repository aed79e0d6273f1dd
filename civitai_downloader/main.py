import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from civitai_downloader import __version__
from civitai_downloader.api import api_router
from civitai_downloader.config import ContainerSettings, get_container_settings
from civitai_downloader.storage import ExportStorage


def create_app(settings: Optional[ContainerSettings] = None) -> FastAPI:
    settings = settings or get_container_settings()
    app = FastAPI(
        title="Civitai Export",
        version=__version__,
        description="Serves the mirrored models, images and archive produced by the download loop.",
    )
    app.state.storage = ExportStorage(settings.export_dir)

    @app.get("/healthz", tags=["health"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(api_router, prefix="/api")

    # Mounted last so the routes above take precedence over files of the same name.
    app.mount(
        "/",
        StaticFiles(directory=str(settings.export_dir), html=True, check_dir=False),
        name="export",
    )

    return app


def run() -> None:
    import uvicorn

    settings = get_container_settings()
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(
        create_app(settings),
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
