# main.py
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config.logging_config import configure_logging
from database import init_db
from middleware.rate_limit import limiter
from middleware.request_logging import RequestLoggingMiddleware
from routers.billing_routes import router as billing_router
from routers.subscription_routes import router as subscription_router

configure_logging()

app = FastAPI(title="Swiftie Ranker API")

origins = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:8081,http://localhost:19006").split(",")
    if o.strip()
]

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(billing_router, prefix="/api")
app.include_router(subscription_router, prefix="/api")

init_db()
