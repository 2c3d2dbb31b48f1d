"""
User model
"""

from sqlalchemy import Column, String, Boolean, Enum
import enum

from marketplace.models.base import BaseModel


class UserRole(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class User(BaseModel):
    """
    Marketplace account. Registration and login live outside this service;
    payments only need the row to exist and its role.
    """
    __tablename__ = "users"

    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(20))
    role = Column(
        Enum(UserRole),
        default=UserRole.BUYER,
        nullable=False
    )
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
