import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tablematch.broadcaster import Broadcaster
from tablematch.config import settings
from tablematch.errors import MatchingError
from tablematch.redis_client import close_pool
from tablematch.routes.matching_api import router as matching_router
from tablematch.routes.public_api import router as public_router
from tablematch.routes.roster_api import router as roster_router

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("tablematch starting")
    yield
    await close_pool()


app = FastAPI(title="Tablematch", lifespan=lifespan)
app.state.broadcaster = Broadcaster()

app.include_router(public_router)
app.include_router(roster_router)
app.include_router(matching_router)


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
    )
