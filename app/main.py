# app/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.db import init_db
from app.errors import NotFoundError, StoreUnavailableError
from app.logging_config import configure_logging
from app.api.routes import router as api_router


configure_logging()
logger = logging.getLogger("app.main")

app = FastAPI(title="Health Chat API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # for dev; tighten in prod
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailableError)
def handle_store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("Store unavailable: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "The service is temporarily unavailable. Please try again."},
    )


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.get("/")
def root():
    return {"message": "Health Chat API is running"}


app.include_router(api_router, prefix="/api")
