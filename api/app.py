from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking.api import router as booking_router
from common.log import configure_logging
from ledger.api import router as ledger_router
from payments.api import router as payments_router

from .deps import Services, build_services


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    configure_logging(services.settings.log_level)

    app = FastAPI(
        title="Club Booking API",
        description="Event registrations, waitlists, reward points and payment reconciliation",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "club-booking"}

    app.include_router(booking_router)
    app.include_router(ledger_router)
    app.include_router(payments_router)
    return app
