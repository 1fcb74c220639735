"""
# User Models

This module defines the persisted **user account** and the `UserModel` accessor that stores
every `AccountSecurity` transition for it.

## Stored Document

Documents in the `users` collection keep camelCase field names:

| Field | Notes |
|-------|-------|
| `email` | Unique (case-insensitive collation), trimmed, lower-cased |
| `passwordHash` | bcrypt hash, never the plaintext |
| `role` | One of `settings.USER_ROLES`, defaults to the first |
| `firstname`, `lastname` | Required, trimmed |
| `isVerified`, `verifyCode`, `verifyCodeExpiresAt` | Email verification |
| `failedLoginAttempts`, `lockUntil`, `lastLoginAt` | Login tracking |
| `resetCode`, `resetCodeExpiresAt` | Password reset |
| `createdAt`, `updatedAt` | Maintained by `RecordAccessor` |

## Usage

```python
users = tenant.model(UserModel)
await users.create({"email": "Ada@Example.com", "password": "s3cret!", "firstname": "Ada", "lastname": "L"})
account = await users.authenticate("ada@example.com", "s3cret!")
code = await users.issue_reset_code(account.id)
await users.reset_password(account.id, code, "n3w-s3cret!")
```

Module Attributes:
    EMAIL_PATTERN (re.Pattern): Basic `local@domain.tld` shape check.
    USER_DESCRIPTOR (ModelDescriptor): Descriptor registered under the name `"user"`.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set, Tuple, TypeVar

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenant_mongodb.config import settings
from tenant_mongodb.managers.logging_manager import get_logger
from tenant_mongodb.models.base_model import RecordAccessor, RecordId
from tenant_mongodb.models.descriptor import IndexSpec, ModelDescriptor
from tenant_mongodb.security.account_security import (
    MAX_FAILED_ATTEMPTS,
    AccountSecurity,
    Clock,
    hash_password,
    is_password_hash,
    utcnow,
    validate_password,
)

logger = get_logger(prefix="[UserModel]")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CODE_REGEX = r"^\d{3}-\d{3}$"

T = TypeVar("T")


class UserAccount(BaseModel):
    """A user account as stored in the tenant's `users` collection.

    Attributes:
        id (Optional[ObjectId]): Document id (`_id`), absent before insertion.
        email (str): Unique login address, normalised to lower case.
        password_hash (str): bcrypt hash of the password.
        role (str): One of the configured user roles.
        firstname (str): Given name.
        lastname (str): Family name.
        is_verified (bool): Whether the email address was confirmed.
        failed_login_attempts (int): Consecutive failed logins since the last success or unlock.
        lock_until (Optional[datetime]): Login is refused until this instant.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", arbitrary_types_allowed=True)

    id: Optional[ObjectId] = Field(default=None, alias="_id")
    email: str = Field(..., max_length=254)
    password_hash: str = Field(..., min_length=1, alias="passwordHash")
    role: str = Field(default_factory=lambda: settings.default_role)
    firstname: str = Field(..., min_length=1, max_length=100)
    lastname: str = Field(..., min_length=1, max_length=100)

    is_verified: bool = Field(default=False, alias="isVerified")
    verify_code: Optional[str] = Field(default=None, alias="verifyCode", pattern=CODE_REGEX)
    verify_code_expires_at: Optional[datetime] = Field(default=None, alias="verifyCodeExpiresAt")

    failed_login_attempts: int = Field(default=0, ge=0, alias="failedLoginAttempts")
    lock_until: Optional[datetime] = Field(default=None, alias="lockUntil")

    reset_code: Optional[str] = Field(default=None, alias="resetCode", pattern=CODE_REGEX)
    reset_code_expires_at: Optional[datetime] = Field(default=None, alias="resetCodeExpiresAt")

    last_login_at: Optional[datetime] = Field(default=None, alias="lastLoginAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address")
        return v

    @field_validator("firstname", "lastname", mode="before")
    @classmethod
    def strip_names(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in settings.USER_ROLES:
            raise ValueError(f"Role must be one of: {', '.join(settings.USER_ROLES)}")
        return v

    @field_validator(
        "verify_code_expires_at",
        "lock_until",
        "reset_code_expires_at",
        "last_login_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def ensure_utc(cls, v):
        # Documents read without tz_aware come back naive; they are UTC.
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


USER_DESCRIPTOR = ModelDescriptor(
    name="user",
    schema=UserAccount,
    collection_name="users",
    indexes=(
        IndexSpec.on("email", name="email_unique", unique=True, collation={"locale": "en", "strength": 2}),
        IndexSpec.on("lockUntil"),
    ),
)


def _hash_plaintext(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Replace a `password` entry (or a non-hash `passwordHash`) with its bcrypt hash."""
    fields = dict(fields)
    plaintext = fields.pop("password", None)
    if plaintext is None:
        for key in ("passwordHash", "password_hash"):
            value = fields.get(key)
            if value is not None and not is_password_hash(value):
                plaintext = fields.pop(key)
                break
    if plaintext is not None:
        fields.pop("password_hash", None)
        fields["passwordHash"] = hash_password(plaintext)
    return fields


class UserModel(RecordAccessor):
    """
    Accessor for the `users` collection of one tenant.

    Besides the generic CRUD surface it persists the account-security state machine. bcrypt
    work is moved off the event loop with `asyncio.to_thread`.

    Args:
        registry (`ModelRegistry`): Registry of the owning tenant.
        clock (`Callable[[], datetime]`): Source of "now" for lockout and code expiry.
    """

    def __init__(self, registry, clock: Clock = utcnow):
        super().__init__(registry)
        self.clock = clock

    @classmethod
    def descriptor(cls) -> ModelDescriptor:
        return USER_DESCRIPTOR

    async def prepare_create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(_hash_plaintext, data)

    async def prepare_update(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        if "password" not in fields and not any(
            key in fields and not is_password_hash(fields[key]) for key in ("passwordHash", "password_hash")
        ):
            return fields
        return await asyncio.to_thread(_hash_plaintext, fields)

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """
        Find a user document by email address.

        Raises:
            `TypeError`: If `email` is not a string.
        """
        if not isinstance(email, str):
            raise TypeError("Email must be a string")
        return await self.find_one({"email": email.strip().lower()})

    async def authenticate(self, email: str, password: str) -> Optional[UserAccount]:
        """
        Check a login attempt and persist its outcome.

        Returns:
            `Optional[UserAccount]`: The account on success, `None` if the email is unknown or the
                password is wrong.

        Raises:
            `AccountLockedError`: If the account is locked. The attempt is not counted.
        """
        document = await self.find_by_email(email)
        if document is None:
            logger.info("Authentication failed: unknown email")
            return None

        account = UserAccount.model_validate(document)
        security = AccountSecurity(account, clock=self.clock)
        security.ensure_not_locked()

        if await asyncio.to_thread(security.verify_password, password):
            security.record_success()
            updated = await self._persist(account.id, account, security.pop_changes())
            logger.info("User %s authenticated", account.id)
            return UserAccount.model_validate(updated) if updated else account

        # Counted atomically so concurrent failures cannot overwrite each other.
        updated = await self.update_by_id(account.id, {"$inc": {"failedLoginAttempts": 1}})
        if updated is None:
            return None
        attempts = updated.get("failedLoginAttempts", 0)
        logger.warning("Failed login for user %s (%d consecutive)", account.id, attempts)
        if attempts >= MAX_FAILED_ATTEMPTS:
            account.failed_login_attempts = attempts
            security.apply_lock()
            await self._persist(account.id, account, security.pop_changes())
        return None

    async def set_password(self, record_id: RecordId, plaintext: str) -> Optional[UserAccount]:
        _, account = await self._transition(record_id, lambda security: security.set_password(plaintext), offload=True)
        return account

    async def unlock(self, record_id: RecordId) -> Optional[UserAccount]:
        _, account = await self._transition(record_id, lambda security: security.unlock())
        if account is not None:
            logger.info("User %s unlocked", account.id)
        return account

    async def issue_verify_code(self, record_id: RecordId) -> Optional[str]:
        code, _ = await self._transition(record_id, lambda security: security.issue_verify_code())
        return code

    async def consume_verify_code(self, record_id: RecordId, code: str) -> Optional[UserAccount]:
        """
        Raises:
            `CodeExpiredError`, `CodeMismatchError`: If `code` is not accepted.
        """
        _, account = await self._transition(record_id, lambda security: security.consume_verify_code(code))
        return account

    async def issue_reset_code(self, record_id: RecordId) -> Optional[str]:
        code, _ = await self._transition(record_id, lambda security: security.issue_reset_code())
        return code

    async def reset_password(self, record_id: RecordId, code: str, new_password: str) -> Optional[UserAccount]:
        """
        Consume a reset code and set a new password in one update.

        Raises:
            `ValidationError`: If `new_password` is empty or too long. The code stays pending.
            `CodeExpiredError`, `CodeMismatchError`: If `code` is not accepted. The password is
                left unchanged.
        """
        validate_password(new_password)

        def _reset(security: AccountSecurity) -> None:
            security.consume_reset_code(code)
            security.set_password(new_password)

        _, account = await self._transition(record_id, _reset, offload=True)
        return account

    async def _transition(
        self, record_id: RecordId, action: Callable[[AccountSecurity], T], offload: bool = False
    ) -> Tuple[Optional[T], Optional[UserAccount]]:
        """
        Load the account, apply `action` to its security state and persist what changed.

        Changes are persisted even when `action` raises, so an expired code is cleared.
        """
        document = await self.find_by_id(record_id)
        if document is None:
            return None, None

        account = UserAccount.model_validate(document)
        security = AccountSecurity(account, clock=self.clock)
        try:
            if offload:
                result = await asyncio.to_thread(action, security)
            else:
                result = action(security)
        finally:
            changes = security.pop_changes()
            if changes:
                document = await self._persist(account.id, account, changes)

        return result, UserAccount.model_validate(document) if document else None

    async def _persist(self, record_id: ObjectId, account: UserAccount, changes: Set[str]) -> Optional[Dict[str, Any]]:
        set_fields: Dict[str, Any] = {}
        unset_fields: Dict[str, str] = {}
        for attribute in sorted(changes):
            key = UserAccount.model_fields[attribute].alias or attribute
            value = getattr(account, attribute)
            if value is None:
                unset_fields[key] = ""
            else:
                set_fields[key] = value

        update: Dict[str, Any] = {}
        if set_fields:
            update["$set"] = set_fields
        if unset_fields:
            update["$unset"] = unset_fields
        if not update:
            return None
        return await self.update_by_id(record_id, update)
