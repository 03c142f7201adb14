from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

APPOINTMENT_STATUSES = ("pending", "confirmed", "cancelled", "completed")


class User(Base):
    """Business owner (tenant) whose calendars are kept in sync"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    business_name = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="user")
    calendar_connections = relationship("SyncConnection", back_populates="user")


class Appointment(Base):
    """
    Booked service visit. Owned by the booking flow; the sync core only reads it
    and writes status when an external calendar cancels the event.
    """

    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    service_type = Column(String(100), nullable=True)  # standard, deep-clean, move-in, move-out
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    property_address = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)
    scheduled_start = Column(DateTime, nullable=False, index=True)  # UTC
    duration_minutes = Column(Integer, nullable=False, default=60)
    status = Column(String(20), nullable=False, default="pending")  # pending, confirmed, cancelled, completed

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="appointments")
    calendar_events = relationship(
        "AppointmentCalendarEvent", back_populates="appointment", cascade="all, delete-orphan"
    )
