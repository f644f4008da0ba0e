import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from authcore.storage.postgres import REQUIRED_TABLES, PostgresStore


class _Result:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class SchemaPool:
    """Answers ``to_regclass`` lookups for a fixed set of present tables."""

    def __init__(self, present):
        self.present = set(present)

    @contextmanager
    def connection(self):
        pool = self

        class _Conn:
            def execute(self, _sql, params):
                table = params[0].split(".", 1)[1]
                return _Result({"oid": table if table in pool.present else None})

        yield _Conn()


def _bare_store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def test_schema_check_lists_missing_tables():
    store = _bare_store(SchemaPool(set(REQUIRED_TABLES) - {"api_key", "member_role"}))
    with pytest.raises(RuntimeError) as exc_info:
        store._verify_required_schema()
    assert "api_key, member_role" in str(exc_info.value)


def test_schema_check_passes_when_complete():
    _bare_store(SchemaPool(REQUIRED_TABLES))._verify_required_schema()


def test_row_decoders_handle_nulls_and_uuid_types():
    now = datetime.now(timezone.utc)
    user_id = uuid.uuid4()
    user = PostgresStore._user_from_row(
        {"id": user_id, "email": "row@example.com", "system_role": None, "created_at": now}
    )
    assert user.id == str(user_id)
    assert user.system_role == "USER"
    assert user.email_verified is False

    perm = PostgresStore._permission_from_row(
        {
            "id": uuid.uuid4(),
            "action": "update",
            "subject": "User",
            "conditions": '{"id": "${user.subjectId}"}',
            "fields": None,
            "inverted": None,
            "organization_id": None,
        }
    )
    assert perm.conditions == {"id": "${user.subjectId}"}
    assert perm.fields == []
    assert perm.organization_id is None

    role = PostgresStore._role_from_row(
        {"id": uuid.uuid4(), "name": "ADMIN", "organization_id": None, "is_system": True}
    )
    assert role.is_system and role.organization_id is None


def test_org_decoder_defaults_acl_version():
    org = PostgresStore._org_from_row({"id": "o1", "name": "Acme", "slug": "acme"})
    assert org.acl_version == 0
