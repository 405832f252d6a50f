"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from eventplanner.config import settings
from eventplanner.database import Base, engine
from eventplanner.errors import DomainError
from eventplanner.logging_config import setup_logging

# Import routers
from eventplanner.routers import users, events, rsvps, waitlist, messages, notifications

# Import all models so Base.metadata knows about them
from eventplanner.models.user import User                       # noqa: F401
from eventplanner.models.event import Event, EventOrganizer     # noqa: F401
from eventplanner.models.rsvp import Rsvp                       # noqa: F401
from eventplanner.models.waitlist import WaitlistEntry          # noqa: F401
from eventplanner.models.quota import MassSendThrottle, QuotaCounter  # noqa: F401
from eventplanner.models.notification import NotificationRecord, OutboxEvent  # noqa: F401
from eventplanner.models.event_mutation import EventMutation    # noqa: F401
from eventplanner.models.communication import MassCommunication, Invitation  # noqa: F401

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Event Planner",
    description="Privacy-focused event planning: lifecycle, RSVPs, waitlists and quota-gated messaging",
    version="0.1.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError):
    logger.info("%s %s rejected with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Register routers
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(events.router, prefix="/api/events", tags=["Events"])
app.include_router(waitlist.router, prefix="/api/events", tags=["Waitlist"])
app.include_router(rsvps.router, prefix="/api/events", tags=["RSVPs"])
app.include_router(messages.router, prefix="/api/events", tags=["Messages"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])


@app.on_event("startup")
def on_startup():
    """Create database tables on startup (for SQLite dev mode)."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)


@app.get("/api/health")
def health_check():
    return {"status": "ok"}
