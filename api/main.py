import logging

import redis
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.embedding_service import get_embedding_service
from utils.errors import AppError
from utils.logging_config import setup_logging
from utils.mongodb_conn import get_mongodb_connection
from utils.redis_conn import get_redis_connection

from .Ingest.main import create_ingest_app
from .chat.chat import router as chat_router

load_dotenv()
setup_logging()

logger = logging.getLogger(__name__)


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: {exc.message}")
        message = "Service temporarily unavailable"
    else:
        message = exc.message
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": message})


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)


app = FastAPI(title="RAG Chat Backend API")
register_error_handlers(app)

# Mount ingest thành sub-app
ingest_app = create_ingest_app()
register_error_handlers(ingest_app)
app.mount("/ingest-service", ingest_app)

app.include_router(chat_router)


@app.get("/health")
async def health():
    if not await get_mongodb_connection().check_connection():
        return {"status": "error", "message": "MongoDB connection failed"}
    try:
        redis_ok = get_redis_connection().check_connection()
    except redis.RedisError:
        redis_ok = False
    if not redis_ok:
        return {"status": "error", "message": "Redis connection failed"}
    return {
        "status": "ok",
        "message": "RAG Chat Backend is running",
        "embedding": get_embedding_service().get_model_info(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
