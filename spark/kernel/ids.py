from __future__ import annotations

import secrets
import string
from uuid import uuid4


_SECRET_ALPHABET = string.ascii_letters + string.digits


def new_id() -> str:
    """Opaque primary key for canonical rows and jobs."""
    return str(uuid4())


def random_secret(length: int = 32) -> str:
    """Random alphanumeric secret, e.g. a per-integration webhook secret."""
    return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))
