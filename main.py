import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import settings
from errors import WatchPartyError
from utils.store import DocumentStore, build_store

from routes.auth_routes import router as auth_router
from routes.party_routes import router as party_router
from routes.chat_routes import router as chat_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(store: Optional[DocumentStore] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # это выполняется *один раз* перед первым запросом
        app.state.store = store if store is not None else build_store(settings.STORE_BACKEND)
        logger.info("Watch party API ready (store=%s)", type(app.state.store).__name__)
        yield
        app.state.store.close()

    app = FastAPI(title="Watch Party API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WatchPartyError)
    async def watch_party_error_handler(request: Request, exc: WatchPartyError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.name, "detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Missing or malformed fields are a plain 400"""
        messages = [f"{'.'.join(str(p) for p in e['loc'][1:])}: {e['msg']}" for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"error": "ValidationError", "detail": " | ".join(messages)},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": int(time.time() * 1000)}

    # Регистрация роутеров
    app.include_router(auth_router, prefix="/auth", tags=["auth"])
    app.include_router(party_router, prefix="/parties", tags=["parties"])
    app.include_router(chat_router, prefix="/chat", tags=["chat"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=True,
    )
