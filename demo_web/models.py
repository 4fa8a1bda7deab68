"""
SQLAlchemy models for the database-backed session store.
"""
from sqlalchemy import Float, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class SessionRow(Base):
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    # Correlation value of the pending login; lets the verifier claim be a single conditional UPDATE
    login_state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # JSON-encoded SessionRecord
    data: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
