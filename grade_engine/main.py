import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from grade_engine import __version__
from grade_engine.api.routes import final_grades, grading
from grade_engine.core.errors import GradingError, grading_error_handler
from grade_engine.core.logging_config import setup_logging
from grade_engine.core.rate_limit import limiter
from grade_engine.db.database import Base, engine

import grade_engine.models  # noqa: F401  (registers tables on Base.metadata)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    logger.info(f"Grade engine {__version__} started")
    yield


app = FastAPI(title="Grade Engine", version=__version__, lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(GradingError, grading_error_handler)

app.include_router(grading.router, prefix="/api")
app.include_router(final_grades.router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "healthy", "version": __version__}
