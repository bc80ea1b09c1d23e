"""Relational storage for storefront (SQLAlchemy ORM)."""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Product


def _utc_datetime() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    image_url: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_price_non_negative"),
        CheckConstraint("stock >= 0", name="check_stock_non_negative"),
    )

    def to_model(self) -> Product:
        return Product(
            id=self.id,
            title=self.title,
            price=self.price,
            description=self.description,
            image_url=self.image_url,
            category=self.category,
            stock=self.stock,
        )

    def __repr__(self) -> str:
        return f"<ProductRow(id={self.id}, title={self.title!r}, stock={self.stock})>"


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_datetime
    )


class AuthSessionRow(Base):
    __tablename__ = "auth_sessions"

    # SHA-256 hex digest of the bearer token; the token itself is never stored
    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_datetime
    )


class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    items: Mapped[str] = mapped_column(Text, nullable=False)  # JSON list of cart lines
    shipping_info: Mapped[str] = mapped_column(Text, nullable=False)  # JSON object
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_datetime, index=True
    )


def _engine_options(url: str) -> dict[str, Any]:
    """Engine keyword arguments for a database URL."""
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}

    options: dict[str, Any] = {
        # Sync FastAPI endpoints run in a threadpool
        "connect_args": {"check_same_thread": False, "timeout": 30},
    }
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every checkout sees an empty database
        options["poolclass"] = StaticPool
    return options


class Database:
    """Owns the engine and session factory. Constructed once by the composition root."""

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize Database.

        Args:
            url: SQLAlchemy database URL.
            echo: Log emitted SQL.
        """
        self.url = url
        self.engine = create_engine(url, echo=echo, **_engine_options(url))
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def in_memory(cls) -> "Database":
        """Create a private in-memory SQLite database with the schema in place."""
        database = cls("sqlite://")
        database.create_schema()
        return database

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        if self.url.startswith("sqlite:///") and self.url != "sqlite:///:memory:":
            Path(self.url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session for reads. Nothing is committed."""
        with self._session_factory() as session:
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session wrapped in one transaction: commit on exit, roll back on exception."""
        with self._session_factory() as session:
            with session.begin():
                yield session

    def dispose(self) -> None:
        self.engine.dispose()
