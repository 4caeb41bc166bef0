import pytest

from cliphub.errors import Conflict, NotFound, ValidationError
from cliphub.services.profiles import validate_handle


@pytest.fixture
def profiles(services):
    return services.profiles


@pytest.mark.parametrize("handle", ["ab", "has space", "x" * 31, "emoji🙂", ""])
def test_invalid_handles(handle):
    with pytest.raises(ValidationError):
        validate_handle(handle)


def test_handles_are_lowercased():
    assert validate_handle("  Alice.Dances ") == "alice.dances"


async def test_create_and_fetch(profiles):
    user = await profiles.create_profile("u1", "Dancer_01", bio="hi")

    assert user.handle == "dancer_01"
    assert user.display_name == "dancer_01"
    assert (user.follower_count, user.following_count) == (0, 0)
    assert (await profiles.get_profile("u1")).bio == "hi"
    with pytest.raises(NotFound):
        await profiles.get_profile("u2")


async def test_duplicates_conflict(profiles):
    await profiles.create_profile("u1", "dancer")
    with pytest.raises(Conflict):
        await profiles.create_profile("u1", "another")
    with pytest.raises(Conflict):
        await profiles.create_profile("u2", "DANCER")


async def test_update_keeps_handle_immutable(services, profiles, upload):
    await profiles.create_profile("u1", "dancer")
    avatar = await upload("u1", "image", "image/jpeg")

    updated = await profiles.update_profile("u1", {"display_name": "D", "avatar_media_id": avatar, "handle": "dancer"})
    assert updated.display_name == "D" and updated.avatar_media_id == avatar

    with pytest.raises(ValidationError):
        await profiles.update_profile("u1", {"handle": "renamed"})
    with pytest.raises(ValidationError):
        await profiles.update_profile("u1", {"follower_count": 10})
    with pytest.raises(ValidationError):
        await profiles.update_profile("u1", {"bio": "b" * 501})
