import asyncio
import logging
import random

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

logger = logging.getLogger(__name__)


def create_app(slow_delay: float = 2.0) -> FastAPI:
    """Target service with immediate, delayed, and failing endpoints."""
    app = FastAPI(title="Mock Service")

    @app.middleware("http")
    async def error_boundary(request: Request, call_next):
        logger.info("Received request: %s %s", request.method, request.url.path)
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error("unhandled error on %s: %s", request.url.path, exc)
            return JSONResponse(
                status_code=500,
                content={"status": "error", "message": str(exc)},
            )

    @app.get("/", response_class=PlainTextResponse)
    async def index():
        return "Hello World!"

    @app.get("/fast")
    async def fast():
        return {"status": "success", "message": "This is a fast endpoint"}

    @app.get("/slow")
    async def slow():
        await asyncio.sleep(slow_delay)
        return {"status": "success", "message": "This is a slow endpoint"}

    @app.get("/error")
    async def error():
        raise RuntimeError("This is a demonstration error")

    @app.get("/api/test")
    async def api_test():
        return [{"id": i, "value": random.random()} for i in range(1000)]

    @app.get("/api/products")
    async def products():
        return [
            {"id": 1, "name": "Keyboard", "price": 49.0},
            {"id": 2, "name": "Mouse", "price": 19.5},
            {"id": 3, "name": "Monitor", "price": 189.0},
        ]

    @app.get("/api/users/{user_id}")
    async def user(user_id: int):
        return {"id": user_id, "name": f"user-{user_id}"}

    return app


app = create_app()


# Run with: perfgate serve-target --port 3000
