from __future__ import annotations  # FastAPI server exposing the interview turn pipeline

import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from config import load_config
from config.settings import settings
from llm_gateway import bind_routes
from storage.migrate import migrate


logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent / "app_config.json"


def create_app(config_path: Path = CONFIG_PATH) -> FastAPI:  # Build the app and bind configured LLM routes
    migrate(settings.DB_PATH)
    if config_path.exists():
        bind_routes(load_config(config_path))
    else:
        logger.warning("LLM route config %s not found; relying on models bound elsewhere", config_path)

    application = FastAPI(title="Interview Engine API")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"]
    )
    application.include_router(router)
    return application


app = create_app()
