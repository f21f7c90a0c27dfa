# src/devhost/bootstrap/credentials.py

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import bcrypt


def generate_password(nbytes: int = 16) -> str:
    """Same shape as ``openssl rand -base64 <nbytes>``."""
    return base64.b64encode(secrets.token_bytes(nbytes)).decode("ascii")


def htpasswd_line(user: str, password: str) -> str:
    """An htpasswd entry with a bcrypt hash, as ``htpasswd -B`` writes it."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10))
    return f"{user}:{hashed.decode('ascii')}\n"


@dataclass
class Credentials:
    """What the operator has to write down at the end of a run."""
    editor_url: Optional[str] = None
    editor_password: Optional[str] = None
    basic_auth_user: Optional[str] = None
    basic_auth_password: Optional[str] = None
    database: Dict[str, str] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
