import logging

from fastapi import FastAPI

from .config import LOG_LEVEL
from .routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(title="Ordering - Order Placement Service", version="0.1.0")
app.include_router(router)
