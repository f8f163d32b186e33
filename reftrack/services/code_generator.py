"""
Reference Code Generator Service

Generates:
  - Reference codes:       {LREF|GREF}-{7 hex}   (e.g. LREF-3389FB2, GREF-9EBEB80)
  - Reopen request ids:    REQ-{YYYYMMDD}-{NNNN} (e.g. REQ-20260412-4821)

Both are random and checked against the table until unique; the unique
column constraints catch the remaining race.
"""

import random
import secrets
from datetime import datetime

from sqlalchemy import select

from reftrack.models import db
from reftrack.models.base import utcnow
from reftrack.models.reference import REF_CODE_PREFIX, Reference

_MAX_ATTEMPTS = 20


def _exists(column, value) -> bool:
    return db.session.execute(select(Reference.id).where(column == value)).first() is not None


def generate_ref_code(scope: str) -> str:
    """Generate a unique reference code for *scope*: LREF-XXXXXXX / GREF-XXXXXXX."""
    prefix = REF_CODE_PREFIX[scope]
    for _ in range(_MAX_ATTEMPTS):
        code = f"{prefix}-{secrets.token_hex(4).upper()[:7]}"
        if not _exists(Reference.ref_code, code):
            return code
    raise RuntimeError(f"Could not generate a unique {prefix} code after {_MAX_ATTEMPTS} attempts")


def generate_reopen_request_id(now: datetime | None = None) -> str:
    """Generate a reopen request id: REQ-YYYYMMDD-NNNN."""
    day = (now or utcnow()).strftime("%Y%m%d")
    for _ in range(_MAX_ATTEMPTS):
        request_id = f"REQ-{day}-{random.randint(1000, 9999)}"
        if not _exists(Reference.reopen_request_id, request_id):
            return request_id
    raise RuntimeError(f"Could not generate a unique reopen request id after {_MAX_ATTEMPTS} attempts")
