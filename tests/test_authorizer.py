"""Subscription authorizer tests — naming conventions and policies."""

import pytest

from chatcast.broadcast.authorizer import (
    AuthDecision,
    ParsedChannel,
    SubscriptionAuthorizer,
)
from chatcast.broadcast.channel import ChannelPolicy
from chatcast.errors import InvalidChannelName


@pytest.fixture()
def authorizer():
    return SubscriptionAuthorizer(public_channels=["everyone", "channel_for_everyone"])


# ─── Public ───────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["everyone", "channel_for_everyone", "public.lobby"])
async def test_public_channels_admit_any_principal(authorizer, name):
    assert await authorizer.authorize("7", name) is AuthDecision.AUTHORIZED
    assert await authorizer.authorize("42", name) is AuthDecision.AUTHORIZED


def test_parse_public_channel(authorizer):
    parsed = authorizer.parse("everyone")
    assert parsed.scope == "public"
    assert parsed.policy is ChannelPolicy.PUBLIC


# ─── Principal-scoped ─────────────────────────────────────


@pytest.mark.asyncio
async def test_user_channel_only_for_owner(authorizer):
    assert await authorizer.authorize("7", "user.7") is AuthDecision.AUTHORIZED
    assert await authorizer.authorize("9", "user.7") is AuthDecision.DENIED


@pytest.mark.asyncio
async def test_dm_channel_for_both_participants(authorizer):
    assert await authorizer.authorize("7", "dm.7.9") is AuthDecision.AUTHORIZED
    assert await authorizer.authorize("9", "dm.7.9") is AuthDecision.AUTHORIZED
    assert await authorizer.authorize("8", "dm.7.9") is AuthDecision.DENIED


def test_parse_dm_targets(authorizer):
    parsed = authorizer.parse("dm.7.9")
    assert parsed.policy is ChannelPolicy.RESTRICTED
    assert parsed.targets == ("7", "9")


@pytest.mark.asyncio
async def test_group_denied_without_membership_check(authorizer):
    assert await authorizer.authorize("7", "group.team") is AuthDecision.DENIED


@pytest.mark.asyncio
async def test_group_uses_sync_membership_check():
    members = {("7", "team")}
    auth = SubscriptionAuthorizer(
        membership_check=lambda principal, group: (principal, group) in members
    )
    assert await auth.authorize("7", "group.team") is AuthDecision.AUTHORIZED
    assert await auth.authorize("8", "group.team") is AuthDecision.DENIED


@pytest.mark.asyncio
async def test_group_uses_async_membership_check():
    calls = []

    async def check(principal, group):
        calls.append((principal, group))
        return principal == "7"

    auth = SubscriptionAuthorizer(membership_check=check)
    assert await auth.authorize("7", "group.ops") is AuthDecision.AUTHORIZED
    assert calls == [("7", "ops")]


# ─── Malformed names ──────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name",
    [
        "",
        "unknown",
        "user.",
        "user.7.8",
        "dm.7",
        "dm.7.",
        "public.",
        "has space",
        "slash/name",
        "x" * 200,
    ],
)
async def test_invalid_names_raise(authorizer, name):
    with pytest.raises(InvalidChannelName):
        await authorizer.authorize("7", name)


# ─── Extensibility ────────────────────────────────────────


class StaffRule:
    policy = ChannelPolicy.RESTRICTED

    def parse(self, name, remainder):
        return (remainder,) if remainder else None

    async def authorize(self, principal, channel: ParsedChannel):
        return principal.startswith("staff-")


@pytest.mark.asyncio
async def test_register_rule_adds_convention(authorizer):
    with pytest.raises(InvalidChannelName):
        authorizer.parse("staff.announcements")

    authorizer.register_rule("staff", StaffRule())

    assert await authorizer.authorize("staff-1", "staff.announcements") is AuthDecision.AUTHORIZED
    assert await authorizer.authorize("7", "staff.announcements") is AuthDecision.DENIED
