"""Identifier utilities."""

from __future__ import annotations

import secrets
import string
import time


def generate_job_id(kind: str = "register") -> str:
  """Return a new job identifier prefixed with its kind and creation time."""
  return f"{kind}_{int(time.time() * 1000)}_{generate_nanoid(9).lower()}"


def generate_file_id() -> str:
  """Return 16 random bytes hex-encoded for storage object names."""
  return secrets.token_hex(16)


def generate_nanoid(size: int = 16) -> str:
  """Return a short non-sequential id suitable for public references."""
  alphabet = string.ascii_letters + string.digits
  return "".join(secrets.choice(alphabet) for _ in range(size))
