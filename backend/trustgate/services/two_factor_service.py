# backend/trustgate/services/two_factor_service.py
"""
2FA credential lifecycle: setup, enable, verify, disable, backup codes.

Secrets are stored Fernet-encrypted and backup codes as salted hashes.
Every state change is written to the audit log.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from trustgate.core.security import decrypt_value, encrypt_value
from trustgate.core.security_logger import security_log
from trustgate.db.stores import CredentialRecord, CredentialStore, UserRecord
from trustgate.exceptions import (
    AlreadyEnabledError,
    InvalidCodeError,
    NotEnabledError,
    PersistenceError,
    ValidationError,
)
from trustgate.services.audit_service import AuditService
from trustgate.services.totp import (
    TOTPEngine,
    is_backup_code_format,
    is_totp_format,
    is_valid_secret,
    normalize_code,
    qr_code_data_uri,
)

logger = logging.getLogger(__name__)

RESOURCE = "2FA"


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    qr_code_url: str
    qr_code: str
    backup_codes: list[str]


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    is_backup_code: bool


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TwoFactorService:
    def __init__(
        self,
        store: CredentialStore,
        engine: TOTPEngine,
        audit: AuditService,
        issuer: str,
        window: int = 1,
        backup_code_count: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.engine = engine
        self.audit = audit
        self.issuer = issuer
        self.window = window
        self.backup_code_count = backup_code_count
        self._clock = clock

    async def _enabled_credential(self, user_id) -> CredentialRecord:
        credential = await self.store.get(user_id)
        if credential is None or not credential.enabled or not credential.secret_encrypted:
            raise NotEnabledError()
        return credential

    async def is_enabled(self, user_id) -> bool:
        credential = await self.store.get(user_id)
        return bool(credential and credential.enabled)

    async def remaining_backup_codes(self, user_id) -> int:
        credential = await self.store.get(user_id)
        if credential is None or not credential.enabled:
            return 0
        return len(credential.backup_codes)

    async def enabled_at(self, user_id) -> datetime | None:
        credential = await self.store.get(user_id)
        return credential.enabled_at if credential and credential.enabled else None

    async def get_setup_info(self, user: UserRecord, ip_address: str | None = None) -> TwoFactorSetup:
        """
        Generate a new secret, its provisioning QR code and a preview backup set.

        Nothing is persisted until enable() confirms the user scanned the code.
        """
        if await self.is_enabled(user.id):
            raise AlreadyEnabledError()

        secret = self.engine.generate_secret()
        uri = self.engine.provisioning_uri(secret, user.email, self.issuer)
        setup = TwoFactorSetup(
            secret=secret,
            qr_code_url=uri,
            qr_code=qr_code_data_uri(uri),
            backup_codes=self.engine.generate_backup_codes(self.backup_code_count),
        )
        self.audit.log_user_action(
            user_id=str(user.id),
            action="2FA_SETUP_INITIATED",
            resource=RESOURCE,
            ip_address=ip_address,
        )
        return setup

    async def enable(
        self, user: UserRecord, secret: str, code: str, ip_address: str | None = None
    ) -> list[str]:
        """Confirm setup with a code from the authenticator; returns plaintext backup codes once."""
        normalized = normalize_code(code)
        if not is_totp_format(normalized):
            raise ValidationError("Verification code must be 6 digits")
        if not is_valid_secret(secret):
            raise ValidationError("Secret is not valid base32")
        if await self.is_enabled(user.id):
            raise AlreadyEnabledError()

        if not self.engine.verify_code(secret, normalized, window=self.window):
            self.audit.log_user_action(
                user_id=str(user.id),
                action="2FA_SETUP_FAILED",
                resource=RESOURCE,
                ip_address=ip_address,
                success=False,
                error_message="Invalid verification code",
            )
            raise InvalidCodeError()

        backup_codes = self.engine.generate_backup_codes(self.backup_code_count)
        await self.store.save(
            CredentialRecord(
                user_id=user.id,
                secret_encrypted=encrypt_value(secret),
                backup_codes=[self.engine.hash_backup_code(c) for c in backup_codes],
                enabled=True,
                enabled_at=self._clock(),
                disabled_at=None,
            )
        )
        self.audit.log_user_action(
            user_id=str(user.id),
            action="2FA_ENABLED",
            resource=RESOURCE,
            ip_address=ip_address,
            details={"backup_code_count": len(backup_codes)},
        )
        logger.info(f"2FA enabled for user {user.id}")
        return backup_codes

    async def disable(self, user: UserRecord, ip_address: str | None = None) -> None:
        credential = await self._enabled_credential(user.id)
        await self.store.save(
            CredentialRecord(
                user_id=credential.user_id,
                secret_encrypted=None,
                backup_codes=[],
                enabled=False,
                enabled_at=credential.enabled_at,
                disabled_at=self._clock(),
            )
        )
        self.audit.log_user_action(
            user_id=str(user.id),
            action="2FA_DISABLED",
            resource=RESOURCE,
            ip_address=ip_address,
        )
        logger.info(f"2FA disabled for user {user.id}")

    async def verify(
        self, user: UserRecord, code: str, ip_address: str | None = None
    ) -> VerificationResult:
        """
        Verify a TOTP code, falling back to the backup codes.

        A matching backup code is consumed. Any failure raises InvalidCodeError
        with the same message whichever check failed.
        """
        credential = await self._enabled_credential(user.id)
        try:
            secret = decrypt_value(credential.secret_encrypted)
        except ValueError as e:
            raise PersistenceError("Stored 2FA secret could not be read") from e

        normalized = normalize_code(code)

        if is_totp_format(normalized) and self.engine.verify_code(
            secret, normalized, window=self.window
        ):
            self.audit.log_user_action(
                user_id=str(user.id),
                action="2FA_VERIFICATION_SUCCESS",
                resource=RESOURCE,
                ip_address=ip_address,
                details={"is_backup_code": False},
            )
            return VerificationResult(success=True, is_backup_code=False)

        if is_backup_code_format(normalized):
            matched = self.engine.match_backup_code(normalized, credential.backup_codes)
            if matched is not None and await self.store.consume_backup_code(user.id, matched):
                self.audit.log_user_action(
                    user_id=str(user.id),
                    action="BACKUP_CODE_USED",
                    resource=RESOURCE,
                    ip_address=ip_address,
                    details={"remaining": len(credential.backup_codes) - 1},
                )
                return VerificationResult(success=True, is_backup_code=True)

        self.audit.log_user_action(
            user_id=str(user.id),
            action="2FA_VERIFICATION_FAILED",
            resource=RESOURCE,
            ip_address=ip_address,
            success=False,
            error_message="Invalid 2FA code",
        )
        security_log.mfa_failed(ip_address, str(user.id))
        raise InvalidCodeError()

    async def regenerate_backup_codes(
        self, user: UserRecord, ip_address: str | None = None
    ) -> list[str]:
        """Replace the whole backup set in one write; old codes stop working immediately."""
        await self._enabled_credential(user.id)
        backup_codes = self.engine.generate_backup_codes(self.backup_code_count)
        await self.store.replace_backup_codes(
            user.id, [self.engine.hash_backup_code(c) for c in backup_codes]
        )
        self.audit.log_user_action(
            user_id=str(user.id),
            action="BACKUP_CODES_REGENERATED",
            resource=RESOURCE,
            ip_address=ip_address,
            details={"backup_code_count": len(backup_codes)},
        )
        return backup_codes
