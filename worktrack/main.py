"""Main FastAPI application entry point."""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from worktrack.config import get_settings
from worktrack.database import engine, Base
from worktrack.api.routes import router
from worktrack.logger import get_logger
from worktrack.services.errors import (
    WorkTrackError,
    NotFoundError,
    SelfReferenceError,
    ConflictError,
    RecurrenceFormatError
)
# Import models to register them with SQLAlchemy Base
from worktrack.models.domain import Item, RoutineCompletion, RoutineSkip, ItemLink
from worktrack.models.audit import Activity

settings = get_settings()
logger = get_logger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.APP_NAME,
    description="Recurring routines and blocking dependencies between work items.",
    version=settings.APP_VERSION
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["worktrack"])

# Most specific first; anything else from the services is a bad request
ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SelfReferenceError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (RecurrenceFormatError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def status_for(error: WorkTrackError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(WorkTrackError)
async def handle_worktrack_error(request: Request, exc: WorkTrackError):
    status_code = status_for(exc)
    logger.warning("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.message})


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
