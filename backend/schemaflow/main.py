from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import schemaflow.models  # noqa: F401  registers tables on Base.metadata
from schemaflow.api.router import api_router
from schemaflow.api.routes.health import router as health_router
from schemaflow.core.config import get_settings
from schemaflow.core.logging import configure_logging
from schemaflow.db.base import Base
from schemaflow.db.session import engine

settings = get_settings()

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_prefix)
app.include_router(health_router)
