from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

API_KEY_ENV = "BINANCE_API_KEY"
API_SECRET_ENV = "BINANCE_API_SECRET"


class CredentialStatus(Enum):
    LOADED = "loaded"
    NOT_FOUND = "not_found"
    INCOMPLETE = "incomplete"


@dataclass
class CredentialResult:
    api_key: Optional[str]
    api_secret: Optional[str]
    status: CredentialStatus
    source: Optional[str] = None

    def __repr__(self) -> str:
        # Secrets never appear in the repr.
        return f"CredentialResult(status={self.status!r}, source={self.source!r})"

    __str__ = __repr__


def load_api_keys(environ: Optional[Mapping[str, str]] = None) -> CredentialResult:
    """Reads the Binance API key pair from the environment."""

    env = os.environ if environ is None else environ
    api_key = (env.get(API_KEY_ENV) or "").strip()
    api_secret = (env.get(API_SECRET_ENV) or "").strip()

    if api_key and api_secret:
        return CredentialResult(api_key, api_secret, CredentialStatus.LOADED, source="environment")
    if api_key or api_secret:
        return CredentialResult(
            api_key or None, api_secret or None, CredentialStatus.INCOMPLETE, source="environment"
        )
    return CredentialResult(None, None, CredentialStatus.NOT_FOUND)


__all__ = ["API_KEY_ENV", "API_SECRET_ENV", "CredentialResult", "CredentialStatus", "load_api_keys"]
