# class_reminders/services/credentials.py
"""
VAPID-ключи. Генерируются один раз вне пайплайна
(python -m class_reminders.cli generate-keys) и приходят через env.

Формат как у web-push / py-vapid:
  VAPID_PRIVATE_KEY: base64url от 32-байтного скаляра P-256 (или PEM)
  VAPID_PUBLIC_KEY:  base64url от 65-байтной несжатой точки (0x04 || X || Y)
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from class_reminders.errors import ConfigError

PRIVATE_KEY_LEN = 32
PUBLIC_KEY_LEN = 65


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    value = value.strip()
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


@dataclass(frozen=True)
class VapidKeyPair:
    public_key: str
    private_key: str = field(repr=False)
    subject: str = "mailto:admin@example.com"

    def claims(self) -> dict:
        # pywebpush дописывает aud/exp прямо в переданный dict, поэтому каждый раз новый
        return {"sub": self.subject}


def _public_point(private: ec.EllipticCurvePrivateKey) -> bytes:
    return private.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )


def _load_private(value: str) -> ec.EllipticCurvePrivateKey:
    if "BEGIN" in value:
        try:
            key = serialization.load_pem_private_key(value.encode(), password=None)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"VAPID_PRIVATE_KEY: bad PEM ({e})") from e
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
            raise ConfigError("VAPID_PRIVATE_KEY: PEM key is not a P-256 EC key")
        return key

    try:
        raw = b64url_decode(value)
    except (binascii.Error, ValueError) as e:
        raise ConfigError("VAPID_PRIVATE_KEY: not valid base64url") from e
    if len(raw) != PRIVATE_KEY_LEN:
        raise ConfigError(f"VAPID_PRIVATE_KEY: expected {PRIVATE_KEY_LEN} bytes, got {len(raw)}")
    try:
        return ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256R1())
    except ValueError as e:
        raise ConfigError("VAPID_PRIVATE_KEY: scalar out of range for P-256") from e


def load_vapid_keys(
    public_key: Optional[str],
    private_key: Optional[str],
    subject: Optional[str],
) -> VapidKeyPair:
    """Проверяет пару и собирает неизменяемый VapidKeyPair. Ничего не пишет и не логирует."""
    if not public_key or not private_key:
        raise ConfigError("VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY must be set")
    if not subject or not subject.startswith(("mailto:", "https:")):
        raise ConfigError("VAPID_SUBJECT must be a mailto: or https: URL")

    private = _load_private(private_key)

    try:
        public_raw = b64url_decode(public_key)
    except (binascii.Error, ValueError) as e:
        raise ConfigError("VAPID_PUBLIC_KEY: not valid base64url") from e
    if len(public_raw) != PUBLIC_KEY_LEN or public_raw[0] != 0x04:
        raise ConfigError(
            f"VAPID_PUBLIC_KEY: expected {PUBLIC_KEY_LEN}-byte uncompressed P-256 point"
        )
    if public_raw != _public_point(private):
        raise ConfigError("VAPID_PUBLIC_KEY does not match VAPID_PRIVATE_KEY")

    raw_private = private.private_numbers().private_value.to_bytes(PRIVATE_KEY_LEN, "big")
    return VapidKeyPair(
        public_key=b64url_encode(public_raw),
        private_key=b64url_encode(raw_private),
        subject=subject,
    )


def load_from_settings(settings) -> VapidKeyPair:
    return load_vapid_keys(
        settings.VAPID_PUBLIC_KEY,
        settings.VAPID_PRIVATE_KEY,
        settings.VAPID_SUBJECT,
    )


def generate_vapid_keys() -> tuple[str, str]:
    """(public, private) в base64url. Только для утилиты generate-keys."""
    private = ec.generate_private_key(ec.SECP256R1())
    raw_private = private.private_numbers().private_value.to_bytes(PRIVATE_KEY_LEN, "big")
    return b64url_encode(_public_point(private)), b64url_encode(raw_private)
