from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import get_settings
from db_models import IdentifyRequest, IdentifyResponse
from db_setup import ContactStore
from errors import ReconciliationError
from logging_setup import configure_logging
from resolver import resolve

configure_logging(get_settings())

logger = structlog.get_logger()


def get_store() -> ContactStore:
    settings = get_settings()
    return ContactStore(settings.database_path, timeout=settings.database_timeout)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = app.dependency_overrides.get(get_store, get_store)()
    store.init_schema()
    logger.info("Contact store ready", path=store.path)
    yield
    logger.info("Shutting down")


app = FastAPI(
    title="Contact Reconciliation API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.status_code >= 500:
        logger.error("Identify failed", code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Malformed request body", "code": "request.validation_error"},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception", error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "code": "internal.unhandled"},
    )


@app.get("/")
async def root():
    return {"message": "Contact reconciliation API is up"}


# sync so FastAPI runs it in the threadpool; resolutions of disjoint groups
# only wait on each other inside the store
@app.post("/identify", response_model=IdentifyResponse)
def identify(request: IdentifyRequest, store: ContactStore = Depends(get_store)):
    contacts = resolve(store, request.email, request.phoneNumber)
    return IdentifyResponse(contacts=contacts)


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
