from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from authcore.logging import get_logger
from authcore.service.permissions import PermissionCache
from authcore.storage.models import Action, Permission, Principal, Subject, SystemRole

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")
_MISSING = object()


def resolve_path(source: Any, path: str) -> Any:
    """Dotted lookup through mappings and attributes; ``None`` when unresolved."""
    current = source
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING or current is None:
            return None
    return current


def interpolate(value: Any, context: Mapping[str, Any]) -> Any:
    """Substitute ``${path}`` placeholders by walking the value tree.

    A string that is exactly one placeholder becomes the resolved value with
    its type intact, or ``None``. Placeholders inside a longer string are
    rendered as text; unresolved ones are left in place so they match nothing.
    """
    if isinstance(value, dict):
        return {key: interpolate(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, context) for item in value]
    if not isinstance(value, str):
        return value
    whole = _PLACEHOLDER.fullmatch(value)
    if whole:
        return resolve_path(context, whole.group(1).strip())

    def _render(match: re.Match) -> str:
        resolved = resolve_path(context, match.group(1).strip())
        return match.group(0) if resolved is None else str(resolved)

    return _PLACEHOLDER.sub(_render, value)


def interpolate_conditions(
    conditions: Optional[Dict[str, Any]], principal: Principal
) -> Optional[Dict[str, Any]]:
    if not conditions:
        return None
    return interpolate(conditions, {"user": principal.as_template_source()})


def _field_of(record: Any, key: str) -> Any:
    return resolve_path(record, key)


def _matches_value(expected: Any, actual: Any) -> bool:
    if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
        for op, operand in expected.items():
            if op == "$eq" and actual != operand:
                return False
            if op == "$ne" and actual == operand:
                return False
            if op == "$in" and actual not in (operand or []):
                return False
            if op == "$nin" and actual in (operand or []):
                return False
            if op not in ("$eq", "$ne", "$in", "$nin"):
                logger.warning("policy_unknown_operator", operator=op)
                return False
        return True
    return expected == actual


def matches_conditions(conditions: Mapping[str, Any], record: Any) -> bool:
    return all(
        _matches_value(expected, _field_of(record, key))
        for key, expected in conditions.items()
    )


@dataclass
class Rule:
    action: str
    subject: str
    conditions: Optional[Dict[str, Any]] = None
    fields: Optional[List[str]] = None
    inverted: bool = False

    def covers(self, action: str, subject: str) -> bool:
        action_ok = self.action == action or self.action == Action.MANAGE.value
        subject_ok = self.subject == subject or self.subject == Subject.ALL.value
        return action_ok and subject_ok


@dataclass
class Ability:
    """Ordered rule list; the last matching rule decides."""

    rules: List[Rule] = field(default_factory=list)

    def can(
        self,
        action: str,
        subject: str,
        record: Any = None,
        field_name: Optional[str] = None,
    ) -> bool:
        action = getattr(action, "value", action)
        subject = getattr(subject, "value", subject)
        for rule in reversed(self.rules):
            if not rule.covers(action, subject):
                continue
            if rule.fields:
                if field_name is None:
                    # A deny scoped to some fields does not deny the whole action
                    if rule.inverted:
                        continue
                elif field_name not in rule.fields:
                    continue
            if rule.conditions:
                if record is None:
                    # Type-level check: conditional grants count, conditional denies do not
                    if rule.inverted:
                        continue
                    return True
                if not matches_conditions(rule.conditions, record):
                    continue
            return not rule.inverted
        return False

    def cannot(
        self,
        action: str,
        subject: str,
        record: Any = None,
        field_name: Optional[str] = None,
    ) -> bool:
        return not self.can(action, subject, record, field_name)


def apply_scopes(
    permissions: Iterable[Permission], scopes: Optional[Iterable[str]]
) -> List[Permission]:
    """Intersect permissions with ``action:subject`` scopes; ``None`` keeps all."""
    if scopes is None:
        return list(permissions)
    allowed = set(scopes)
    return [perm for perm in permissions if perm.scope_key() in allowed]


class PolicyEngine:
    def __init__(self, permission_cache: PermissionCache) -> None:
        self.permission_cache = permission_cache

    async def build(self, principal: Principal) -> Ability:
        if principal.system_role == SystemRole.SUPER_ADMIN.value:
            return Ability([Rule(Action.MANAGE.value, Subject.ALL.value)])

        if not principal.has_org_context:
            own = {"id": principal.subject_id}
            return Ability(
                [
                    Rule(Action.READ.value, Subject.USER.value, conditions=dict(own)),
                    Rule(Action.UPDATE.value, Subject.USER.value, conditions=dict(own)),
                ]
            )

        permissions = await self.permission_cache.get(
            principal.organization_id, principal.subject_id, principal.acl_version
        )
        effective = apply_scopes(permissions, principal.scopes)
        rules = [
            Rule(
                action=perm.action,
                subject=perm.subject,
                conditions=interpolate_conditions(perm.conditions, principal),
                fields=list(perm.fields) if perm.fields else None,
                inverted=perm.inverted,
            )
            for perm in effective
        ]
        logger.debug(
            "ability_built",
            user_id=principal.subject_id,
            org_id=principal.organization_id,
            acl_version=principal.acl_version,
            rules=len(rules),
            scoped=principal.scopes is not None,
        )
        return Ability(rules)
