"""User API routes."""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from eventplanner.database import get_db
from eventplanner.errors import ValidationFailed
from eventplanner.models.user import User
from eventplanner.schemas.user import UserCreate, UserUpdate, UserOut
from eventplanner.services.guards import require_user

logger = logging.getLogger(__name__)
router = APIRouter()


def _ensure_email_free(db: Session, email):
    if email and db.query(User).filter(User.email == email).first():
        raise ValidationFailed("Email is already registered", email=email)


@router.post("/", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    """Create a user with optional email and phone contacts."""
    _ensure_email_free(db, payload.email)
    user = User(**payload.model_dump())
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created user %s (%s)", user.user_id, user.display_name)
    return user


@router.get("/", response_model=list[UserOut])
def list_users(db: Session = Depends(get_db)):
    """List all users."""
    return db.query(User).all()


@router.get("/{user_id}", response_model=UserOut)
def get_user(user_id: str, db: Session = Depends(get_db)):
    return require_user(db, user_id)


@router.patch("/{user_id}", response_model=UserOut)
def update_user(user_id: str, payload: UserUpdate, db: Session = Depends(get_db)):
    """Update contact details (partial update)."""
    user = require_user(db, user_id)
    if payload.email and payload.email != user.email:
        _ensure_email_free(db, payload.email)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    logger.info("Updated user %s", user_id)
    return user
