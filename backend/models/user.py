"""User model definitions."""

import uuid

from sqlalchemy import Column, String
from backend.database import Base

CANDIDATE_ROLE = 'candidate'
STAFF_ROLE = 'staff'


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True)
    name = Column(String)
    role = Column(String, default=CANDIDATE_ROLE)  # candidate/staff
