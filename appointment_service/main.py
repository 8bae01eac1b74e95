import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from booking.adapters.api import INTERNAL_ERROR, router
from booking.common.config import get_settings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(root_path="/appointment_service")
app.include_router(router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(
        f"Unhandled error on {request.method} {request.url.path}: {exc}"
    )
    return JSONResponse(status_code=500, content={"detail": INTERNAL_ERROR})


@app.get("/health")
async def health_check():
    return {"status": "ok"}
