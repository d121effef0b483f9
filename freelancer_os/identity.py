"""
Identity provider: accounts, password checks and password reset codes.

The in-memory provider serves development and tests; the SQLAlchemy provider
persists accounts next to the document store.
"""

from __future__ import annotations

import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Protocol

from sqlalchemy import Boolean, Column, Float, String, create_engine, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from freelancer_os.errors import AuthError, StoreError
from freelancer_os.security import (
    FederatedAssertion,
    LoginThrottle,
    get_password_hash,
    normalize_email,
    validate_email,
    validate_password,
    verify_password,
)

PASSWORD_PROVIDER = "password"
RESET_CODE_TTL_SECONDS = 3600


@dataclass(frozen=True)
class Identity:
    """The signed-in principal. Passed explicitly to every collection."""

    uid: str
    email: str
    display_name: str = ""
    photo_url: Optional[str] = None
    provider: str = PASSWORD_PROVIDER
    authenticated_at: float = field(default_factory=time.time)


@dataclass
class Account:
    uid: str
    email: str
    password_hash: Optional[str]
    display_name: str = ""
    photo_url: Optional[str] = None
    provider: str = PASSWORD_PROVIDER
    subject: Optional[str] = None
    disabled: bool = False
    created_at: float = field(default_factory=lambda: time.time())

    def to_identity(self, authenticated_at: Optional[float] = None) -> Identity:
        return Identity(
            uid=self.uid,
            email=self.email,
            display_name=self.display_name,
            photo_url=self.photo_url,
            provider=self.provider,
            authenticated_at=authenticated_at or time.time(),
        )


class IdentityProvider(Protocol):
    """Interface for account storage and credential checks."""

    def create_account(
        self, email: str, password: str, display_name: str = ""
    ) -> Account:
        ...

    def authenticate(self, email: str, password: str) -> Account:
        ...

    def authenticate_federated(self, assertion: FederatedAssertion) -> Account:
        ...

    def get_account(self, uid: str) -> Optional[Account]:
        ...

    def update_account(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
        disabled: Optional[bool] = None,
    ) -> Account:
        ...

    def delete_account(self, uid: str) -> None:
        ...

    def create_reset_code(self, email: str) -> str:
        ...

    def confirm_reset(self, code: str, new_password: str) -> Account:
        ...


class BaseIdentityProvider:
    """
    Credential rules shared by the provider backends.

    Subclasses implement the storage primitives ``_load``, ``_load_by_email``,
    ``_insert``, ``_save``, ``_remove``, ``_save_reset_code`` and
    ``_pop_reset_code``.
    """

    def __init__(self, throttle: Optional[LoginThrottle] = None):
        self.throttle = throttle or LoginThrottle()

    def create_account(
        self, email: str, password: str, display_name: str = ""
    ) -> Account:
        normalized = validate_email(email)
        validate_password(password)
        if self._load_by_email(normalized) is not None:
            raise AuthError("email_in_use")
        account = Account(
            uid=uuid.uuid4().hex,
            email=normalized,
            password_hash=get_password_hash(password),
            display_name=display_name.strip(),
        )
        self._insert(account)
        return account

    def authenticate(self, email: str, password: str) -> Account:
        normalized = validate_email(email)
        self.throttle.check(normalized)
        account = self._load_by_email(normalized)
        if account is None:
            raise AuthError("user_not_found")
        if account.password_hash is None:
            raise AuthError("account_exists_with_different_credential")
        if not verify_password(password, account.password_hash):
            self.throttle.record_failure(normalized)
            raise AuthError("wrong_password")
        if account.disabled:
            raise AuthError("disabled")
        self.throttle.reset(normalized)
        return account

    def authenticate_federated(self, assertion: FederatedAssertion) -> Account:
        account = self._load_by_email(assertion.email)
        if account is None:
            account = Account(
                uid=uuid.uuid4().hex,
                email=assertion.email,
                password_hash=None,
                display_name=assertion.display_name,
                photo_url=assertion.photo_url,
                provider=assertion.provider,
                subject=assertion.subject,
            )
            self._insert(account)
            return account
        if account.provider != assertion.provider or account.subject != assertion.subject:
            raise AuthError("account_exists_with_different_credential")
        if account.disabled:
            raise AuthError("disabled")
        return account

    def get_account(self, uid: str) -> Optional[Account]:
        return self._load(uid)

    def update_account(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
        disabled: Optional[bool] = None,
    ) -> Account:
        account = self._load(uid)
        if account is None:
            raise AuthError("user_not_found")
        changes = {}
        if email is not None:
            normalized = validate_email(email)
            other = self._load_by_email(normalized)
            if other is not None and other.uid != uid:
                raise AuthError("email_in_use")
            changes["email"] = normalized
        if password is not None:
            validate_password(password)
            changes["password_hash"] = get_password_hash(password)
        if display_name is not None:
            changes["display_name"] = display_name
        if photo_url is not None:
            changes["photo_url"] = photo_url
        if disabled is not None:
            changes["disabled"] = disabled
        updated = replace(account, **changes)
        self._save(updated)
        return updated

    def delete_account(self, uid: str) -> None:
        self._remove(uid)

    def create_reset_code(self, email: str) -> str:
        normalized = validate_email(email)
        account = self._load_by_email(normalized)
        if account is None:
            raise AuthError("user_not_found")
        code = secrets.token_urlsafe(24)
        self._save_reset_code(code, account.uid, time.time() + RESET_CODE_TTL_SECONDS)
        return code

    def confirm_reset(self, code: str, new_password: str) -> Account:
        validate_password(new_password)
        entry = self._pop_reset_code(code)
        if entry is None:
            raise AuthError("invalid_reset_code")
        uid, expires_at = entry
        if expires_at < time.time():
            raise AuthError("invalid_reset_code")
        account = self.update_account(uid, password=new_password)
        self.throttle.reset(account.email)
        return account

    # Storage primitives

    def _load(self, uid: str) -> Optional[Account]:
        raise NotImplementedError

    def _load_by_email(self, email: str) -> Optional[Account]:
        raise NotImplementedError

    def _insert(self, account: Account) -> None:
        raise NotImplementedError

    def _save(self, account: Account) -> None:
        raise NotImplementedError

    def _remove(self, uid: str) -> None:
        raise NotImplementedError

    def _save_reset_code(self, code: str, uid: str, expires_at: float) -> None:
        raise NotImplementedError

    def _pop_reset_code(self, code: str) -> Optional[tuple[str, float]]:
        raise NotImplementedError


class InMemoryIdentityProvider(BaseIdentityProvider):
    """Simple in-memory identity provider for development and tests."""

    def __init__(self, throttle: Optional[LoginThrottle] = None):
        super().__init__(throttle)
        self.accounts: Dict[str, Account] = {}
        self.reset_codes: Dict[str, tuple[str, float]] = {}
        self._lock = threading.RLock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.accounts.clear()
            self.reset_codes.clear()

    def _load(self, uid: str) -> Optional[Account]:
        with self._lock:
            return self.accounts.get(uid)

    def _load_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return account
        return None

    def _insert(self, account: Account) -> None:
        with self._lock:
            if self._load_by_email(account.email) is not None:
                raise AuthError("email_in_use")
            self.accounts[account.uid] = account

    def _save(self, account: Account) -> None:
        with self._lock:
            self.accounts[account.uid] = account

    def _remove(self, uid: str) -> None:
        with self._lock:
            self.accounts.pop(uid, None)
            for code in [c for c, (owner, _) in self.reset_codes.items() if owner == uid]:
                del self.reset_codes[code]

    def _save_reset_code(self, code: str, uid: str, expires_at: float) -> None:
        with self._lock:
            self.reset_codes[code] = (uid, expires_at)

    def _pop_reset_code(self, code: str) -> Optional[tuple[str, float]]:
        with self._lock:
            return self.reset_codes.pop(code, None)


class SqlIdentityProvider(BaseIdentityProvider):
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, throttle: Optional[LoginThrottle] = None):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlIdentityProvider")
        super().__init__(throttle)
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_account(self, row: "AccountRow") -> Account:
        return Account(
            uid=row.uid,
            email=row.email,
            password_hash=row.password_hash,
            display_name=row.display_name,
            photo_url=row.photo_url,
            provider=row.provider,
            subject=row.subject,
            disabled=row.disabled,
            created_at=row.created_at,
        )

    def _load(self, uid: str) -> Optional[Account]:
        with self.Session() as session:
            row = session.get(AccountRow, uid)
            return self._to_account(row) if row else None

    def _load_by_email(self, email: str) -> Optional[Account]:
        with self.Session() as session:
            stmt = select(AccountRow).where(AccountRow.email == normalize_email(email))
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_account(row) if row else None

    def _insert(self, account: Account) -> None:
        try:
            with self.Session.begin() as session:
                session.add(
                    AccountRow(
                        uid=account.uid,
                        email=account.email,
                        password_hash=account.password_hash,
                        display_name=account.display_name,
                        photo_url=account.photo_url,
                        provider=account.provider,
                        subject=account.subject,
                        disabled=account.disabled,
                        created_at=account.created_at,
                    )
                )
        except IntegrityError as exc:
            raise AuthError("email_in_use") from exc

    def _save(self, account: Account) -> None:
        try:
            with self.Session.begin() as session:
                row = session.get(AccountRow, account.uid)
                if row is None:
                    raise AuthError("user_not_found")
                row.email = account.email
                row.password_hash = account.password_hash
                row.display_name = account.display_name
                row.photo_url = account.photo_url
                row.disabled = account.disabled
        except IntegrityError as exc:
            raise AuthError("email_in_use") from exc

    def _remove(self, uid: str) -> None:
        try:
            with self.Session.begin() as session:
                session.execute(delete(ResetCodeRow).where(ResetCodeRow.uid == uid))
                session.execute(delete(AccountRow).where(AccountRow.uid == uid))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to delete account {uid!r}: {exc}") from exc

    def _save_reset_code(self, code: str, uid: str, expires_at: float) -> None:
        with self.Session.begin() as session:
            session.add(ResetCodeRow(code=code, uid=uid, expires_at=expires_at))

    def _pop_reset_code(self, code: str) -> Optional[tuple[str, float]]:
        with self.Session.begin() as session:
            row = session.get(ResetCodeRow, code)
            if row is None:
                return None
            entry = (row.uid, row.expires_at)
            session.delete(row)
            return entry


Base = declarative_base()


class AccountRow(Base):
    __tablename__ = "accounts"

    uid = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=True)
    display_name = Column(String, nullable=False, default="")
    photo_url = Column(String, nullable=True)
    provider = Column(String, nullable=False, default=PASSWORD_PROVIDER)
    subject = Column(String, nullable=True)
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class ResetCodeRow(Base):
    __tablename__ = "password_reset_codes"

    code = Column(String, primary_key=True)
    uid = Column(String, nullable=False, index=True)
    expires_at = Column(Float, nullable=False)
