from __future__ import annotations

import pytest

from wagateway.exceptions import InvalidPayload, MediaError
from wagateway.groups import GroupManager, channel_jid
from wagateway.util import http

GROUP = "120363000000000001@g.us"
COMMUNITY = "120363000000000002@g.us"
CHANNEL = "120363111111111111@newsletter"


def _serve(monkeypatch, status: int = 200, body: bytes = b"\x89PNG") -> list[str]:
    urls: list[str] = []

    async def fake_request(method, url, **kwargs):
        urls.append(url)
        return http.HttpResponse(status=status, body=body)

    monkeypatch.setattr(http, "request", fake_request)
    return urls


@pytest.mark.asyncio
async def test_create_group_mirrors_subject(manager, crm, store, connect) -> None:
    _, socket = await connect(manager)
    groups = GroupManager(manager, crm)

    group = await groups.create_group("s1", "Team", ["5511999999999", "5511888887777"], "Hi")

    assert group["id"] == GROUP
    assert socket.calls[-2:] == [
        (
            "group_create",
            "Team",
            ["5511999999999@s.whatsapp.net", "5511888887777@s.whatsapp.net"],
        ),
        ("group_update_description", GROUP, "Hi"),
    ]
    (contact,) = [c for c in store.rows("contacts") if c["jid"] == GROUP]
    assert contact["name"] == "Team"


@pytest.mark.asyncio
async def test_settings_and_participants(manager, crm, store, connect) -> None:
    _, socket = await connect(manager)
    groups = GroupManager(manager, crm)

    await groups.update_participants("s1", GROUP, "promote", ["5511999999999"])
    await groups.update_settings("s1", GROUP, "locked", True)
    await groups.update_settings("s1", GROUP, "announcement", False)
    await groups.update_settings("s1", GROUP, "subject", "Renamed")

    assert socket.calls[-4:] == [
        ("group_participants_update", GROUP, ["5511999999999@s.whatsapp.net"], "promote"),
        ("group_setting_update", GROUP, "locked"),
        ("group_setting_update", GROUP, "not_announcement"),
        ("group_update_subject", GROUP, "Renamed"),
    ]
    (contact,) = [c for c in store.rows("contacts") if c["jid"] == GROUP]
    assert contact["name"] == "Renamed"


@pytest.mark.asyncio
async def test_invalid_group_requests(manager, crm, connect) -> None:
    await connect(manager)
    groups = GroupManager(manager, crm)

    with pytest.raises(InvalidPayload):
        await groups.create_group("s1", "", ["5511999999999"])
    with pytest.raises(InvalidPayload):
        await groups.update_participants(
            "s1", GROUP, "kick", ["5511999999999"]  # type: ignore[arg-type]
        )
    with pytest.raises(InvalidPayload):
        await groups.update_settings("s1", GROUP, "color", "blue")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_invite_link(manager, crm, connect) -> None:
    await connect(manager)
    link = await GroupManager(manager, crm).invite_link("s1", GROUP)
    assert link == "https://chat.whatsapp.com/AbCdEf123"


@pytest.mark.asyncio
async def test_community_is_created_and_flagged(manager, crm, store, connect) -> None:
    _, socket = await connect(manager)
    groups = GroupManager(manager, crm)

    await groups.create_community("s1", "Clinic members", "All units")
    await groups.link_group_to_community("s1", COMMUNITY, GROUP)

    assert ("group_create", "Clinic members", []) in socket.calls
    assert socket.calls[-1] == ("community_link_group", GROUP, COMMUNITY)
    (contact,) = [c for c in store.rows("contacts") if c["jid"] == GROUP]
    assert contact["is_community"] is True
    assert contact["name"] == "Clinic members"

    with pytest.raises(InvalidPayload):
        await groups.link_group_to_community("s1", GROUP, GROUP)
    with pytest.raises(InvalidPayload):
        await groups.link_group_to_community("s1", COMMUNITY, "5511999999999")


@pytest.mark.asyncio
async def test_group_picture_is_downloaded_and_mirrored(
    manager, crm, store, connect, monkeypatch
) -> None:
    _, socket = await connect(manager)
    urls = _serve(monkeypatch)

    await GroupManager(manager, crm).update_picture("s1", GROUP, "https://cdn.example/g.png")

    assert urls == ["https://cdn.example/g.png"]
    assert socket.calls[-1] == ("update_profile_picture", GROUP, b"\x89PNG")
    (contact,) = [c for c in store.rows("contacts") if c["jid"] == GROUP]
    assert contact["profile_pic_url"] == "https://cdn.example/g.png"


@pytest.mark.asyncio
async def test_unreachable_group_picture_changes_nothing(
    manager, crm, connect, monkeypatch
) -> None:
    _, socket = await connect(manager)
    _serve(monkeypatch, status=404, body=b"")

    with pytest.raises(MediaError):
        await GroupManager(manager, crm).update_picture("s1", GROUP, "https://cdn.example/x")
    assert not any(c[0] == "update_profile_picture" for c in socket.calls)


@pytest.mark.asyncio
async def test_channel_lifecycle(manager, crm, store, connect) -> None:
    _, socket = await connect(manager)
    groups = GroupManager(manager, crm)

    created = await groups.create_channel("s1", "Offers", "Weekly deals")
    found = await groups.search_channels("s1", "  news ")
    await groups.follow_channel("s1", "120363111111111111")
    updates = await groups.channel_messages("s1", CHANNEL, 3)
    await groups.leave_channel("s1", CHANNEL)

    assert created["id"] == "120363999999999999@newsletter"
    assert found[0]["id"] == CHANNEL
    assert ("newsletter_search", "news", 20) in socket.calls
    assert [u["id"] for u in updates] == ["N0", "N1", "N2"]
    assert socket.calls[-1] == ("newsletter_unfollow", CHANNEL)
    names = {c["jid"]: c["name"] for c in store.rows("contacts") if c.get("is_newsletter")}
    assert names == {
        "120363999999999999@newsletter": "Offers",
        CHANNEL: "News Daily",
    }


@pytest.mark.asyncio
async def test_invalid_channel_requests(manager, crm, connect) -> None:
    await connect(manager)
    groups = GroupManager(manager, crm)

    with pytest.raises(InvalidPayload):
        await groups.create_channel("s1", "")
    with pytest.raises(InvalidPayload):
        await groups.search_channels("s1", "   ")
    with pytest.raises(InvalidPayload):
        await groups.follow_channel("s1", GROUP)
    with pytest.raises(InvalidPayload):
        await groups.channel_messages("s1", CHANNEL, 0)
    assert channel_jid("42@newsletter") == "42@newsletter"
