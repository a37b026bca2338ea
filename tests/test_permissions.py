import pytest

from gatekeep.service.permissions import PermissionCatalog
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Permission


@pytest.fixture
def catalog(memory_store):
    return PermissionCatalog(memory_store)


@pytest.fixture
def seeded(catalog):
    read = catalog.create(Permission.new("posts:read", "Read posts", "posts", "read"))
    write = catalog.create(Permission.new("posts:write", "Write posts", "posts", "write"))
    admin = catalog.create(Permission.new("users:admin", "Manage users", "users", "admin"))
    return read, write, admin


def test_lookups(catalog, seeded):
    read, _, admin = seeded
    assert catalog.find_by_id(read.id).name == "posts:read"
    assert catalog.find_by_name("users:admin").id == admin.id
    assert [p.name for p in catalog.find_all()] == ["posts:read", "posts:write", "users:admin"]
    assert [p.action for p in catalog.find_by_resource("posts")] == ["read", "write"]


def test_misses_are_empty_not_errors(catalog, seeded):
    assert catalog.find_by_id("missing") is None
    assert catalog.find_by_name("missing") is None
    assert catalog.find_by_resource("billing") == []


def test_name_is_unique(catalog, seeded):
    with pytest.raises(ConstraintViolation):
        catalog.create(Permission.new("posts:read", "Again", "posts", "read"))


def test_resource_action_pair_may_repeat(catalog, seeded):
    created = catalog.create(Permission.new("posts:read-alt", "Alias", "posts", "read"))
    assert len([p for p in catalog.find_by_resource("posts") if p.action == "read"]) == 2
    assert created.id


def test_update(catalog, seeded):
    read, write, _ = seeded
    read.description = "Read any post"
    updated = catalog.update(read)
    assert updated.description == "Read any post"
    assert updated.updated_at >= read.created_at

    write.name = "posts:read"
    with pytest.raises(ConstraintViolation):
        catalog.update(write)


def test_update_missing(catalog):
    with pytest.raises(ConstraintViolation):
        catalog.update(Permission.new("ghost", "", "ghosts", "haunt"))


def test_delete(catalog, seeded):
    read, _, _ = seeded
    assert catalog.delete(read.id) is True
    assert catalog.find_by_id(read.id) is None
    assert catalog.delete(read.id) is False
