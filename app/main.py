from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from app.deps import close_http_clients
from app.routers.booking import router


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("Booking lifecycle service starting")
    yield
    await close_http_clients()
    logger.info("Booking lifecycle service stopped")


app = FastAPI(title="Booking lifecycle service", lifespan=lifespan)
app.include_router(router)
