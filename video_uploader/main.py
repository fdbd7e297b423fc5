import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from video_uploader.api.routes import object_store, router, session_store
from video_uploader.cleaner import start_cleaner
from video_uploader.config import CORS_ORIGINS, ENABLE_CLEANER
from video_uploader.core.exceptions import register_exception_handlers
from video_uploader.db import init_db

app = FastAPI(title="Video Uploader API", version="1.0.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("video_uploader")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "Content-Length"],
)

init_db()

app.include_router(router)
register_exception_handlers(app)

if ENABLE_CLEANER:
    start_cleaner(session_store, object_store, logger)
