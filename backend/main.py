from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
import logging
import os

from database import get_db, init_db
from ledger_store import LedgerStore
import delivery_api
import integrity_api

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Delivery Reconciliation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(delivery_api.router)
app.include_router(integrity_api.router)


@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("Ledger tables and guards ready")


@app.get("/")
def read_root():
    return {"message": "Delivery Reconciliation API is running"}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Ledger store diagnostic record."""
    return LedgerStore(db).diagnostics()
