"""
User Model
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from ..db import Base
from ..utils.timeutil import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(150), nullable=True, unique=True)
    username = Column(String(50), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)  # bcrypt
    photo_url = Column(String(255), nullable=True)
    gender = Column(String(20), nullable=True)
    phone = Column(String(30), nullable=True)
    department = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, default="user")  # admin | plp | user
    created_at = Column(DateTime, default=utcnow, nullable=False)

    tokens = relationship("ApiToken", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "username": self.username,
            "photo_url": self.photo_url,
            "gender": self.gender,
            "phone": self.phone,
            "department": self.department,
            "role": self.role,
        }
