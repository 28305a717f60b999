"""
Account signup and password login.
"""

import uuid
from datetime import datetime
from typing import Callable

from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from shared.errors import AuthenticationError, ConflictError, ValidationError
from shared.logging import get_logger
from shared.models import Account, Role, Tier, utcnow
from shared.repositories import Repositories

MIN_PASSWORD_LENGTH = 8


class AccountService:
    """Creates standard accounts and checks their passwords."""

    def __init__(self, repos: Repositories, password_scheme: str = "pbkdf2_sha256",
                 clock: Callable[[], datetime] = utcnow):
        self.repos = repos
        self.clock = clock
        self.pwd_context = CryptContext(schemes=[password_scheme], default=password_scheme, deprecated="auto")
        self.logger = get_logger("auth.accounts")

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        try:
            return self.pwd_context.verify(password, password_hash)
        except (UnknownHashError, ValueError):
            return False

    async def signup(self, email: str, password: str) -> Account:
        email = (email or "").strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError("A valid email address is required", {"field": "email"})
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                {"field": "password"}
            )

        now = self.clock()
        account = Account(
            id=uuid.uuid4().hex,
            email=email,
            password_hash=self.hash_password(password),
            role=Role.STANDARD,
            tier=Tier.FREE,
            created_at=now,
            updated_at=now,
        )
        if not await self.repos.accounts.create(account):
            raise ConflictError("An account with this email already exists", {"email": email})

        self.logger.info("Account created", account_id=account.id)
        return account

    async def authenticate(self, email: str, password: str) -> Account:
        account = await self.repos.accounts.find_by_email((email or "").strip().lower())
        # Same message for every failure so callers cannot probe for emails.
        if account is None or account.auth_disabled or not account.password_hash:
            raise AuthenticationError("Invalid email or password", code="INVALID_CREDENTIALS")
        if not self.verify_password(password or "", account.password_hash):
            self.logger.info("Password rejected", account_id=account.id)
            raise AuthenticationError("Invalid email or password", code="INVALID_CREDENTIALS")
        return account
