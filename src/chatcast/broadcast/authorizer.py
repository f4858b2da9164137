"""Subscription authorizer — may this principal join this channel?

Learn: Authorization is driven by the channel *name*. Each naming
convention is a rule keyed by prefix:

    everyone, channel_for_everyone   configured public names
    public.<name>                    any authenticated principal
    user.<principal>                 only that principal
    dm.<a>.<b>                       direct conversation between a and b
    group.<group_id>                 external membership check

New conventions are added with ``register_rule`` instead of editing
this module. A well-formed name never raises; a name that matches no
convention raises InvalidChannelName.
"""

import inspect
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Protocol, Union

import structlog

from chatcast.broadcast.channel import ChannelPolicy
from chatcast.errors import InvalidChannelName

logger = structlog.get_logger()

CHANNEL_NAME_RE = re.compile(r"^[A-Za-z0-9_\-=@,.;]+$")
MAX_CHANNEL_NAME_LENGTH = 164

# (principal, group_id) -> bool, sync or async
MembershipCheck = Callable[[str, str], Union[bool, Awaitable[bool]]]


class AuthDecision(str, Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"


@dataclass(frozen=True)
class ParsedChannel:
    """A channel name resolved against its naming convention."""

    name: str
    scope: str
    policy: ChannelPolicy
    targets: tuple[str, ...] = ()


class ChannelRule(Protocol):
    """One naming convention."""

    policy: ChannelPolicy

    def parse(self, name: str, remainder: str) -> Optional[tuple[str, ...]]:
        """Return the encoded targets, or None if the name is malformed."""

    async def authorize(self, principal: str, channel: ParsedChannel) -> bool:
        ...


class PublicRule:
    """Any authenticated principal may join."""

    policy = ChannelPolicy.PUBLIC

    def parse(self, name: str, remainder: str) -> Optional[tuple[str, ...]]:
        return (remainder,) if remainder else None

    async def authorize(self, principal: str, channel: ParsedChannel) -> bool:
        return True


class UserRule:
    """Private channel of one principal: ``user.<principal>``."""

    policy = ChannelPolicy.RESTRICTED

    def parse(self, name: str, remainder: str) -> Optional[tuple[str, ...]]:
        if not remainder or "." in remainder:
            return None
        return (remainder,)

    async def authorize(self, principal: str, channel: ParsedChannel) -> bool:
        return principal == channel.targets[0]


class DirectMessageRule:
    """Conversation between exactly two principals: ``dm.<a>.<b>``."""

    policy = ChannelPolicy.RESTRICTED

    def parse(self, name: str, remainder: str) -> Optional[tuple[str, ...]]:
        parts = remainder.split(".")
        if len(parts) != 2 or not all(parts):
            return None
        return tuple(parts)

    async def authorize(self, principal: str, channel: ParsedChannel) -> bool:
        return principal in channel.targets


class GroupRule:
    """Group channel ``group.<id>``, backed by an external membership check."""

    policy = ChannelPolicy.RESTRICTED

    def __init__(self, membership_check: Optional[MembershipCheck] = None):
        self.membership_check = membership_check

    def parse(self, name: str, remainder: str) -> Optional[tuple[str, ...]]:
        if not remainder or "." in remainder:
            return None
        return (remainder,)

    async def authorize(self, principal: str, channel: ParsedChannel) -> bool:
        if self.membership_check is None:
            return False
        result = self.membership_check(principal, channel.targets[0])
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


class SubscriptionAuthorizer:
    """Decides whether a principal may join a named channel."""

    def __init__(
        self,
        public_channels: Iterable[str] = ("everyone",),
        membership_check: Optional[MembershipCheck] = None,
    ):
        self.public_channels = frozenset(public_channels)
        self._public = PublicRule()
        self._rules: dict[str, ChannelRule] = {
            "public": self._public,
            "user": UserRule(),
            "dm": DirectMessageRule(),
            "group": GroupRule(membership_check),
        }

    def register_rule(self, prefix: str, rule: ChannelRule) -> None:
        """Add (or replace) the naming convention for ``<prefix>.<...>``."""
        self._rules[prefix] = rule

    def parse(self, name: str) -> ParsedChannel:
        """Resolve a name to its convention or raise InvalidChannelName."""
        if not name:
            raise InvalidChannelName("channel name must not be empty")
        if len(name) > MAX_CHANNEL_NAME_LENGTH:
            raise InvalidChannelName(f"channel name too long: {len(name)} chars")
        if not CHANNEL_NAME_RE.match(name):
            raise InvalidChannelName(f"invalid characters in channel name {name!r}")

        if name in self.public_channels:
            return ParsedChannel(name=name, scope="public", policy=ChannelPolicy.PUBLIC)

        prefix, _, remainder = name.partition(".")
        rule = self._rules.get(prefix)
        if rule is not None:
            targets = rule.parse(name, remainder)
            if targets is not None:
                return ParsedChannel(
                    name=name, scope=prefix, policy=rule.policy, targets=targets
                )

        raise InvalidChannelName(f"unknown channel naming convention: {name!r}")

    async def authorize(self, principal: str, name: str) -> AuthDecision:
        channel = self.parse(name)
        if name in self.public_channels:
            rule = self._public
        else:
            rule = self._rules[channel.scope]
        allowed = await rule.authorize(str(principal), channel)
        decision = AuthDecision.AUTHORIZED if allowed else AuthDecision.DENIED
        if not allowed:
            logger.info(
                "broadcast.subscription_denied",
                principal=principal,
                channel=name,
                scope=channel.scope,
            )
        return decision
