"""Mass communication and invitation records."""
import uuid
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint, Enum as SAEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from eventplanner.database import Base
from eventplanner.models.quota import Channel


class TargetAudience(str, enum.Enum):
    all = "ALL"
    yes_only = "YES_ONLY"
    maybe_only = "MAYBE_ONLY"
    no_only = "NO_ONLY"
    waitlist_only = "WAITLIST_ONLY"


class DeliveryStatus(str, enum.Enum):
    sent = "SENT"
    failed = "FAILED"


class MassCommunication(Base):
    __tablename__ = "mass_communications"

    communication_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False, index=True)
    organizer_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    channel = Column(SAEnum(Channel), nullable=False)
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    target_audience = Column(SAEnum(TargetAudience), nullable=False)
    recipient_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    sent_at = Column(DateTime(timezone=True), nullable=False)

    recipients = relationship(
        "MassCommunicationRecipient", back_populates="communication", cascade="all, delete-orphan"
    )


class MassCommunicationRecipient(Base):
    __tablename__ = "mass_communication_recipients"

    recipient_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    communication_id = Column(
        String(36), ForeignKey("mass_communications.communication_id"), nullable=False
    )
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    contact = Column(String(255), nullable=False)
    status = Column(SAEnum(DeliveryStatus), nullable=False)
    failure_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    communication = relationship("MassCommunication", back_populates="recipients")


class Invitation(Base):
    __tablename__ = "invitations"
    __table_args__ = (
        UniqueConstraint("event_id", "channel", "contact", name="uq_invitation_event_channel_contact"),
    )

    invitation_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False, index=True)
    channel = Column(SAEnum(Channel), nullable=False)
    contact = Column(String(255), nullable=False)
    status = Column(SAEnum(DeliveryStatus), nullable=False)
    failure_reason = Column(String(500), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=False)
