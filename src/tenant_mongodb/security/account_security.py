"""
# Account Security

State machine over a single user account: password hashing and verification, failed-login
lockout and short-lived one-time codes for email verification and password reset.

`AccountSecurity` only mutates the account object it wraps. It performs no I/O; persisting the
resulting transitions is the job of `UserModel`, which reads the touched fields back through
`pop_changes()`.

## Rules

| Concern | Rule |
|---------|------|
| Hashing | bcrypt, cost factor `SALT_ROUNDS` (12), fresh salt per hash |
| Lockout | `MAX_FAILED_ATTEMPTS` (5) consecutive failures lock for `LOCK_DURATION` (15 min) |
| Counter | Only success or `unlock()` resets `failed_login_attempts` |
| Codes | `DDD-DDD`, valid while `now < expiry`, `CODE_EXPIRATION` (15 min), single use |

All time decisions go through the injectable `clock`, so tests can pin "now". Instants that
get persisted are truncated to milliseconds, the resolution of BSON dates.
"""

import re
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Set

import bcrypt

from tenant_mongodb.errors import AccountLockedError, CodeExpiredError, CodeMismatchError, ValidationError
from tenant_mongodb.managers.logging_manager import get_logger
from tenant_mongodb.models.base_model import truncate_to_millis, utcnow

logger = get_logger(prefix="[AccountSecurity]")

SALT_ROUNDS = 12
CODE_EXPIRATION = timedelta(minutes=15)
MAX_FAILED_ATTEMPTS = 5
LOCK_DURATION = timedelta(minutes=15)
MAX_PASSWORD_BYTES = 72

CODE_PATTERN = re.compile(r"^\d{3}-\d{3}$")
BCRYPT_HASH_PATTERN = re.compile(r"^\$2[aby]?\$\d{2}\$[./A-Za-z0-9]{53}$")

Clock = Callable[[], datetime]


class CodeKind(str, Enum):
    VERIFY = "verify"
    RESET = "reset"


# (code attribute, expiry attribute) per kind
_CODE_FIELDS = {
    CodeKind.VERIFY: ("verify_code", "verify_code_expires_at"),
    CodeKind.RESET: ("reset_code", "reset_code_expires_at"),
}


def generate_code() -> str:
    """Return a `DDD-DDD` code, each half drawn uniformly from 100-999."""
    return f"{secrets.randbelow(900) + 100}-{secrets.randbelow(900) + 100}"


def is_password_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(BCRYPT_HASH_PATTERN.match(value))


def validate_password(plaintext: Any) -> None:
    """
    Raises:
        `ValidationError`: If `plaintext` is empty or longer than bcrypt accepts (72 UTF-8 bytes).
    """
    if not isinstance(plaintext, str) or not plaintext:
        raise ValidationError("Password must be a non-empty string", [{"loc": ("password",), "msg": "required"}])
    if len(plaintext.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes",
            [{"loc": ("password",), "msg": f"at most {MAX_PASSWORD_BYTES} bytes"}],
        )


def hash_password(plaintext: str) -> str:
    """Hash `plaintext` with a fresh bcrypt salt."""
    validate_password(plaintext)
    return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=SALT_ROUNDS)).decode("utf-8")


def check_password(candidate: str, password_hash: Optional[str]) -> bool:
    """Constant-time comparison of `candidate` against a bcrypt hash. Never raises."""
    if not isinstance(candidate, str) or not password_hash:
        return False
    if len(candidate.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(candidate.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed; rejecting candidate")
        return False


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccountSecurity:
    """
    Security transitions of one account.

    Args:
        account: Any object exposing the user account attributes (`password_hash`,
            `failed_login_attempts`, `lock_until`, `verify_code`, ...), typically a `UserAccount`.
        clock (`Callable[[], datetime]`): Source of the current, timezone-aware time.
    """

    def __init__(self, account: Any, clock: Clock = utcnow):
        self.account = account
        self.clock = clock
        self._changes: Set[str] = set()

    def _set(self, attribute: str, value: Any) -> None:
        setattr(self.account, attribute, value)
        self._changes.add(attribute)

    def now(self) -> datetime:
        """Current time at the precision the store keeps."""
        return truncate_to_millis(self.clock())

    def pop_changes(self) -> Set[str]:
        """Return and forget the attribute names touched since the last call."""
        changes, self._changes = self._changes, set()
        return changes

    # --- Passwords -----------------------------------------------------------

    def set_password(self, plaintext: str) -> None:
        self._set("password_hash", hash_password(plaintext))

    def verify_password(self, candidate: str) -> bool:
        return check_password(candidate, self.account.password_hash)

    # --- Lockout -------------------------------------------------------------

    @property
    def lock_until(self) -> Optional[datetime]:
        return _aware(self.account.lock_until)

    def is_locked(self) -> bool:
        lock_until = self.lock_until
        return lock_until is not None and lock_until > self.clock()

    def ensure_not_locked(self) -> None:
        """
        Raises:
            `AccountLockedError`: If the account is currently locked.
        """
        if self.is_locked():
            raise AccountLockedError(self.lock_until)

    def authenticate(self, candidate: str) -> bool:
        """
        Check `candidate` and apply the lockout rules.

        A locked account is refused before the password is looked at, so attempts during a
        lock change nothing.

        Raises:
            `AccountLockedError`: If the account is currently locked.
        """
        self.ensure_not_locked()
        if self.verify_password(candidate):
            self.record_success()
            return True
        self.register_failed_attempt()
        return False

    def register_failed_attempt(self) -> int:
        attempts = (self.account.failed_login_attempts or 0) + 1
        self._set("failed_login_attempts", attempts)
        if attempts >= MAX_FAILED_ATTEMPTS:
            self.apply_lock()
        return attempts

    def apply_lock(self) -> datetime:
        lock_until = self.now() + LOCK_DURATION
        self._set("lock_until", lock_until)
        logger.warning("Account locked until %s after %d failed attempts", lock_until.isoformat(), MAX_FAILED_ATTEMPTS)
        return lock_until

    def record_success(self) -> None:
        self._set("failed_login_attempts", 0)
        self._set("lock_until", None)
        self._set("last_login_at", self.now())

    def unlock(self) -> None:
        self._set("failed_login_attempts", 0)
        self._set("lock_until", None)

    # --- One-time codes ------------------------------------------------------

    def issue_code(self, kind: CodeKind) -> str:
        """Generate a code of `kind`, replacing any pending one."""
        code_attr, expiry_attr = _CODE_FIELDS[CodeKind(kind)]
        code = generate_code()
        self._set(code_attr, code)
        self._set(expiry_attr, self.now() + CODE_EXPIRATION)
        return code

    def consume_code(self, kind: CodeKind, candidate: str) -> None:
        """
        Accept `candidate` iff it equals the pending code and has not expired, then clear it.

        Raises:
            `CodeMismatchError`: If no code is pending or `candidate` differs.
            `CodeExpiredError`: If the pending code has expired. An expired code is cleared.
        """
        kind = CodeKind(kind)
        code_attr, expiry_attr = _CODE_FIELDS[kind]
        stored = getattr(self.account, code_attr)
        expires_at = _aware(getattr(self.account, expiry_attr))

        if not stored or not isinstance(candidate, str) or not CODE_PATTERN.match(candidate):
            raise CodeMismatchError(kind.value)
        if expires_at is None or self.clock() >= expires_at:
            self._clear_code(kind)
            raise CodeExpiredError(kind.value)
        if not secrets.compare_digest(stored, candidate):
            raise CodeMismatchError(kind.value)

        self._clear_code(kind)
        if kind is CodeKind.VERIFY:
            self._set("is_verified", True)

    def _clear_code(self, kind: CodeKind) -> None:
        code_attr, expiry_attr = _CODE_FIELDS[kind]
        self._set(code_attr, None)
        self._set(expiry_attr, None)

    def issue_verify_code(self) -> str:
        return self.issue_code(CodeKind.VERIFY)

    def consume_verify_code(self, candidate: str) -> None:
        self.consume_code(CodeKind.VERIFY, candidate)

    def issue_reset_code(self) -> str:
        return self.issue_code(CodeKind.RESET)

    def consume_reset_code(self, candidate: str) -> None:
        self.consume_code(CodeKind.RESET, candidate)
