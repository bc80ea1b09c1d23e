"""User registration, password hashing and login sessions."""

import hashlib
import logging
import secrets

import bcrypt
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import AuthSessionRow, Database, UserRow
from .errors import (
    AccountStorageError,
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
)
from .models import User, _format_timestamp, _generate_id
from .validation import validate_registration

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
TOKEN_BYTES = 32


def hash_password(password: str) -> str:
    """Return a salted bcrypt hash of the password."""
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("ascii")


def verify_password(password: str, hashed: str) -> bool:
    """Check a password against a hash_password() string. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        return False


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _user_from_row(row: UserRow) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        created_at=_format_timestamp(row.created_at),
    )


class AccountService:
    """Manages user accounts and bearer-token sessions."""

    def __init__(self, database: Database):
        self.database = database

    def register(self, email: str, password: str, name: str | None = None) -> User:
        """
        Create a user account.

        Raises:
            InvalidRegistrationError: If email or password is unacceptable.
            EmailAlreadyRegisteredError: If the email already has an account.
            AccountStorageError: On storage failure.
        """
        validate_registration(email, password)
        email = email.strip().lower()

        row = UserRow(
            id=_generate_id(),
            email=email,
            name=name or None,
            password_hash=hash_password(password),
        )
        try:
            with self.database.transaction() as session:
                existing = session.scalar(select(UserRow.id).where(UserRow.email == email))
                if existing is not None:
                    raise EmailAlreadyRegisteredError(email)
                session.add(row)
        except IntegrityError:
            # Concurrent registration won the unique constraint
            raise EmailAlreadyRegisteredError(email)
        except SQLAlchemyError:
            logger.exception("Failed to register user %s", email)
            raise AccountStorageError()

        logger.info("Registered user %s", row.id)
        return _user_from_row(row)

    def authenticate(self, email: str, password: str) -> User:
        """
        Verify credentials.

        Raises:
            InvalidCredentialsError: If the email is unknown or the password is wrong.
        """
        if not email or not password:
            raise InvalidCredentialsError()
        try:
            with self.database.session() as session:
                row = session.scalar(select(UserRow).where(UserRow.email == email.strip().lower()))
        except SQLAlchemyError:
            logger.exception("Failed to look up user for login")
            raise AccountStorageError()

        if row is None or not verify_password(password, row.password_hash):
            raise InvalidCredentialsError()
        return _user_from_row(row)

    def login(self, email: str, password: str) -> tuple[str, User]:
        """Authenticate and open a session. Returns (bearer token, user)."""
        user = self.authenticate(email, password)
        token = secrets.token_urlsafe(TOKEN_BYTES)
        try:
            with self.database.transaction() as session:
                session.add(AuthSessionRow(token_hash=_token_digest(token), user_id=user.id))
        except SQLAlchemyError:
            logger.exception("Failed to open session for user %s", user.id)
            raise AccountStorageError()
        return token, user

    def resolve_token(self, token: str | None) -> User | None:
        """Return the user owning a bearer token, or None."""
        if not token:
            return None
        try:
            with self.database.session() as session:
                row = session.scalar(
                    select(UserRow)
                    .join(AuthSessionRow, AuthSessionRow.user_id == UserRow.id)
                    .where(AuthSessionRow.token_hash == _token_digest(token))
                )
                return _user_from_row(row) if row is not None else None
        except SQLAlchemyError:
            logger.exception("Failed to resolve session token")
            raise AccountStorageError()

    def logout(self, token: str) -> None:
        try:
            with self.database.transaction() as session:
                session.execute(
                    delete(AuthSessionRow).where(AuthSessionRow.token_hash == _token_digest(token))
                )
        except SQLAlchemyError:
            logger.exception("Failed to close session")
            raise AccountStorageError()

    def get_user(self, user_id: str) -> User | None:
        try:
            with self.database.session() as session:
                row = session.get(UserRow, user_id)
                return _user_from_row(row) if row is not None else None
        except SQLAlchemyError:
            logger.exception("Failed to load user %s", user_id)
            raise AccountStorageError()

    def find_by_email(self, email: str) -> User | None:
        try:
            with self.database.session() as session:
                row = session.scalar(select(UserRow).where(UserRow.email == email.strip().lower()))
                return _user_from_row(row) if row is not None else None
        except SQLAlchemyError:
            logger.exception("Failed to look up user by email")
            raise AccountStorageError()
