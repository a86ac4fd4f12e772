# backend/trustgate/services/totp.py
"""
TOTP engine (RFC 6238 on top of pyotp) and backup-code primitives.

Pure computation: no I/O and no persistence. The clock is injected so tests
can step through time deterministically.
"""

import base64
import binascii
import hashlib
import hmac
import io
import re
import secrets
import time
from collections.abc import Callable
from urllib.parse import quote

import pyotp
import qrcode

DEFAULT_TIME_STEP = 30
DEFAULT_DIGITS = 6
BACKUP_CODE_BYTES = 4  # 8 hex characters
BACKUP_CODE_SALT_BYTES = 16
BACKUP_CODE_ITERATIONS = 10_000

TOTP_CODE_RE = re.compile(r"^\d{6}$")
BACKUP_CODE_RE = re.compile(r"^[A-F0-9]{8}$")


def normalize_code(code: str) -> str:
    """Strip whitespace and dashes users paste along with a code."""
    return re.sub(r"[\s-]", "", code or "").upper()


def is_totp_format(code: str) -> bool:
    return bool(TOTP_CODE_RE.match(code))


def is_backup_code_format(code: str) -> bool:
    return bool(BACKUP_CODE_RE.match(code))


def is_valid_secret(secret: str) -> bool:
    """True if the secret decodes as base32 (padding optional)."""
    if not secret:
        return False
    padded = secret.upper() + "=" * (-len(secret) % 8)
    try:
        base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return False
    return True


class TOTPEngine:
    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        time_step: int = DEFAULT_TIME_STEP,
        digits: int = DEFAULT_DIGITS,
    ):
        self._clock = clock
        self.time_step = time_step
        self.digits = digits

    def generate_secret(self) -> str:
        return pyotp.random_base32()

    def _totp(self, secret: str, time_step: int | None = None) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self.digits, interval=time_step or self.time_step)

    def counter(self, time_step: int | None = None) -> int:
        return int(self._clock() // (time_step or self.time_step))

    def generate_code(self, secret: str, time_step: int | None = None) -> str:
        """Code for the current time step of the injected clock."""
        return self._totp(secret, time_step).at(int(self._clock()))

    def verify_code(self, secret: str, code: str, window: int = 1) -> bool:
        """
        Check a code against every step in ``counter - window .. counter + window``.

        Each step's code is derived from its own counter, so ``window`` really
        widens the accepted clock skew.
        """
        code = normalize_code(code)
        if not is_totp_format(code) or not is_valid_secret(secret):
            return False

        totp = self._totp(secret)
        now = int(self._clock())
        matched = False
        for offset in range(-window, window + 1):
            # No early exit: every candidate step is compared
            if hmac.compare_digest(totp.at(now, counter_offset=offset), code):
                matched = True
        return matched

    def generate_backup_codes(self, count: int = 10) -> list[str]:
        return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]

    def hash_backup_code(self, code: str) -> str:
        """Salted PBKDF2-SHA512 digest stored as ``salt$hash`` (both hex)."""
        salt = secrets.token_bytes(BACKUP_CODE_SALT_BYTES)
        digest = hashlib.pbkdf2_hmac(
            "sha512", normalize_code(code).encode(), salt, BACKUP_CODE_ITERATIONS
        )
        return f"{salt.hex()}${digest.hex()}"

    def verify_backup_code(self, code: str, stored: str) -> bool:
        try:
            salt_hex, digest_hex = stored.split("$", 1)
            salt = bytes.fromhex(salt_hex)
        except ValueError:
            return False
        candidate = hashlib.pbkdf2_hmac(
            "sha512", normalize_code(code).encode(), salt, BACKUP_CODE_ITERATIONS
        )
        return hmac.compare_digest(candidate.hex(), digest_hex)

    def match_backup_code(self, code: str, stored_codes: list[str]) -> str | None:
        """Return the stored hash matching ``code``, or None."""
        for stored in stored_codes:
            if self.verify_backup_code(code, stored):
                return stored
        return None

    def provisioning_uri(self, secret: str, email: str, issuer: str) -> str:
        """otpauth URI in the parameter set standard authenticator apps expect."""
        issuer_q = quote(issuer, safe="")
        return (
            f"otpauth://totp/{issuer_q}:{quote(email, safe='')}"
            f"?secret={quote(secret, safe='')}&issuer={issuer_q}"
            f"&algorithm=SHA1&digits={self.digits}&period={self.time_step}"
        )


def qr_code_data_uri(uri: str) -> str:
    """Render ``uri`` as a base64 PNG data URI for authenticator apps."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)

    return "data:image/png;base64," + base64.b64encode(buffer.read()).decode("utf-8")
