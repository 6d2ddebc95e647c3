"""Configuration and security utilities."""

from requestflow.config.settings import settings
from requestflow.config.security import (
    sign_payload,
    verify_payload_signature
)

__all__ = [
    'settings',
    'sign_payload',
    'verify_payload_signature'
]
