"""
User model.

Accounts are managed by the authentication collaborator; the gateway only
needs the row so instances have an owner.
"""
from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from gateway.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """User owning zero or more messaging instances."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Relationships
    instances = relationship(
        "Instance",
        back_populates="user",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
