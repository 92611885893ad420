import uuid

import pytest

from inbox.conversations.schemas import QuickReplyUpsert
from inbox.errors import QuickReplyNotFound
from inbox.quick_replies import QuickReplyRegistry


@pytest.fixture
def registry(repository):
    return QuickReplyRegistry(repository)


def test_upsert_is_last_writer_wins(registry):
    tenant = uuid.uuid4()
    first = registry.upsert(tenant, "/hours", QuickReplyUpsert(body="9 to 5"))
    second = registry.upsert(tenant, "/hours", QuickReplyUpsert(body="9 to 6", title="Hours"))

    assert registry.expand(tenant, "/hours") == "9 to 6"
    assert second.created_at == first.created_at
    assert [r.shortcut for r in registry.list(tenant)] == ["/hours"]


def test_shortcuts_are_case_sensitive_and_tenant_scoped(registry):
    tenant, other = uuid.uuid4(), uuid.uuid4()
    registry.upsert(tenant, "/Hours", QuickReplyUpsert(body="9 to 5"))

    with pytest.raises(QuickReplyNotFound):
        registry.expand(tenant, "/hours")
    with pytest.raises(QuickReplyNotFound):
        registry.expand(other, "/Hours")


def test_delete_removes_shortcut(registry):
    tenant = uuid.uuid4()
    registry.upsert(tenant, "/bye", QuickReplyUpsert(body="Thanks for reaching out!"))
    registry.delete(tenant, "/bye")

    assert registry.list(tenant) == []
    with pytest.raises(QuickReplyNotFound):
        registry.delete(tenant, "/bye")
