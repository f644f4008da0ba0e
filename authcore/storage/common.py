"""Helpers shared between the memory and postgres store implementations.

Keeps seed data, email normalisation and row decoding identical across
backends so both behave the same under the service layer.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from authcore.storage.models import (
    ADMIN_ROLE_NAME,
    MEMBER_ROLE_NAME,
    VIEWER_ROLE_NAME,
    Action,
    Subject,
)

# System roles (organization_id NULL) and their system-wide permissions.
# Each entry: (role name, description, [(action, subject, conditions)])
SYSTEM_ROLE_SEED: List[tuple[str, str, List[tuple[str, str, Optional[dict]]]]] = [
    (
        ADMIN_ROLE_NAME,
        "Full organization management",
        [
            (Action.MANAGE.value, Subject.ORGANIZATION.value, None),
            (Action.MANAGE.value, Subject.ROLE.value, None),
            (Action.MANAGE.value, Subject.PERMISSION.value, None),
            (Action.MANAGE.value, Subject.USER.value, None),
        ],
    ),
    (
        MEMBER_ROLE_NAME,
        "Standard member access",
        [
            (Action.CREATE.value, Subject.ALL.value, None),
            (Action.READ.value, Subject.ALL.value, None),
            (Action.UPDATE.value, Subject.USER.value, {"id": "${user.subjectId}"}),
        ],
    ),
    (
        VIEWER_ROLE_NAME,
        "Read-only access",
        [
            (Action.READ.value, Subject.ALL.value, None),
        ],
    ),
]


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    """Emails are matched case-insensitively and without surrounding spaces."""
    return email.strip().lower()


def parse_json_field(raw: Any) -> Optional[Any]:
    """Decode a JSON column that may arrive as text, a decoded value, or NULL."""
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    if isinstance(raw, str):
        if not raw.strip():
            return None
        return json.loads(raw)
    return raw


def dedupe_by_id(items: List[Any]) -> List[Any]:
    """Keep the first occurrence of each ``.id`` preserving order."""
    seen: set[str] = set()
    result: List[Any] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        result.append(item)
    return result


def row_value(row: Dict[str, Any], key: str, default: Any = None) -> Any:
    value = row.get(key, default)
    return default if value is None else value
