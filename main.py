# main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
import db
from billing_route import router
from errors import (
  ConflictError,
  NotFoundError,
  ReferentialError,
  StoreError,
  ValidationError,
)

logging.basicConfig(
  level=config.LOG_LEVEL,
  format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
  db.init_engine(config.DATABASE_URL, echo=config.SQL_ECHO)
  db.init_db()
  try:
    yield
  finally:
    db.dispose_engine()


app = FastAPI(title="FluxBill Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
  CORSMiddleware,
  allow_origins=config.CORS_ORIGINS,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.include_router(router)


@app.exception_handler(ValidationError)
async def validation_failed(_request: Request, exc: ValidationError):
  return JSONResponse(status_code=400, content={"error": "Validation failed", "details": exc.details()})


@app.exception_handler(RequestValidationError)
async def request_malformed(_request: Request, exc: RequestValidationError):
  details = [
    {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
    for err in exc.errors()
  ]
  return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


@app.exception_handler(NotFoundError)
async def not_found(_request: Request, exc: NotFoundError):
  return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(ReferentialError)
async def dangling_reference(_request: Request, exc: ReferentialError):
  return JSONResponse(status_code=404, content={"error": str(exc), "field": exc.field})


@app.exception_handler(ConflictError)
async def conflict(_request: Request, exc: ConflictError):
  return JSONResponse(status_code=409, content={"error": exc.message, "kind": exc.kind.value})


@app.exception_handler(StoreError)
async def store_failed(_request: Request, exc: StoreError):
  logger.error("request failed in store: %s", exc)
  return JSONResponse(status_code=500, content={"error": "Internal store error"})


@app.get("/health")
def health():
  return {"ok": True, "version": app.version}
