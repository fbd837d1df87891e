from datetime import timedelta

import pytest

from companion.core.database import utc_now
from companion.core.errors import LimitReachedError, NotFoundError, ValidationError
from companion.features.characters.service import (
    archive_character,
    create_character,
    get_character,
    get_memory_level,
    list_characters,
)
from companion.features.plans.service import assign_plan


def test_create_and_fetch():
    character = create_character("u1", "  Mia ", "You are Mia.", memory_level=2)

    assert character["name"] == "Mia"
    assert character["memory_level"] == 2
    assert not character["is_archived"]
    assert get_character(character["id"], "u1") == character
    assert get_character(character["id"], "someone-else") is None


@pytest.mark.parametrize("name", ["", "   ", "x" * 101])
def test_invalid_names_rejected(name):
    with pytest.raises(ValidationError):
        create_character("u1", name)


def test_unknown_memory_level_rejected():
    with pytest.raises(ValidationError):
        create_character("u1", "Mia", memory_level=4)


def test_free_user_limited_to_one_active_companion():
    create_character("u1", "Mia")
    with pytest.raises(LimitReachedError) as exc:
        create_character("u1", "Zoe")
    assert exc.value.limit == 1


def test_archiving_frees_a_slot():
    first = create_character("u1", "Mia")
    archived = archive_character(first["id"], "u1")
    assert archived["is_archived"]

    create_character("u1", "Zoe")
    assert [c["name"] for c in list_characters("u1")] == ["Zoe"]
    assert len(list_characters("u1", include_archived=True)) == 2


def test_premium_allows_three():
    assign_plan("u1", "premium", "active", utc_now() + timedelta(days=30))
    for name in ("Mia", "Zoe", "Ava"):
        create_character("u1", name)
    with pytest.raises(LimitReachedError):
        create_character("u1", "Lea")


def test_admin_identity_bypasses_companion_limit():
    create_character("u1", "Mia")
    create_character("u1", "Zoe", identity={"is_admin": True})
    assert len(list_characters("u1")) == 2


def test_archive_other_users_character_not_found():
    character = create_character("u1", "Mia")
    with pytest.raises(NotFoundError):
        archive_character(character["id"], "u2")


def test_memory_level_defaults_to_one_for_unknown_character():
    assert get_memory_level("missing") == 1
    character = create_character("u1", "Mia", memory_level=3)
    assert get_memory_level(character["id"]) == 3
