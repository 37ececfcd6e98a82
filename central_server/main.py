from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from central_server.api.routes import attendance, devices, employees, health
from central_server.core.config import get_settings
from central_server.db.base import Base
from central_server.db.session import engine

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("central.server")


def bootstrap_schema() -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    bootstrap_schema()
    yield


app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(employees.router, prefix=settings.api_prefix)
app.include_router(attendance.router, prefix=settings.api_prefix)
app.include_router(devices.router, prefix=settings.api_prefix)
