import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import payments, sessions, users, webhooks
from .db import async_session, init_db
from .config import settings
from .dependencies import Services, build_services
from .errors import PaymentServiceError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def payment_error_handler(request: Request, exc: PaymentServiceError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="EV Charging Payments Service")

    # CORS - allow your app domain(s)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # change to your frontend domains in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PaymentServiceError, payment_error_handler)

    app.include_router(sessions.router)
    app.include_router(payments.router)
    app.include_router(users.router)
    app.include_router(webhooks.router)

    app.state.services = services

    @app.on_event("startup")
    async def on_startup():
        # init db tables if not using migrations
        await init_db()
        if app.state.services is None:
            app.state.services = build_services(settings, async_session)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("chargepay.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
