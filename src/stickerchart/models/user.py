from sqlalchemy import Boolean, Column, ForeignKey, Integer, String

from ..database import Base


class Role(Base):
    """Static reference set of user roles."""

    __tablename__ = "roles"

    role_id = Column(Integer, primary_key=True, autoincrement=True)
    role_name = Column(String, unique=True, nullable=False)


class User(Base):
    """SQLAlchemy model for chart users."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, index=True, nullable=False)
    role_id = Column(Integer, ForeignKey("roles.role_id"), nullable=False)
    code = Column(String(4), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
    icon = Column(String, nullable=True)
