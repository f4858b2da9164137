"""Settings validation tests."""

import pytest
from pydantic import ValidationError

from chatcast.config import Settings


def test_defaults_are_valid_in_development():
    s = Settings()
    assert s.default_channel == "everyone"
    assert "channel_for_everyone" in s.public_channels


def test_default_secret_refused_outside_development():
    with pytest.raises(ValidationError, match="CHATCAST_JWT_SECRET"):
        Settings(environment="production")


@pytest.mark.parametrize(
    "overrides",
    [{"dispatch_workers": 0}, {"intake_capacity": 0}, {"outbound_queue_size": 0}],
)
def test_fanout_sizes_must_be_positive(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("CHATCAST_DISPATCH_WORKERS", "8")
    monkeypatch.setenv("CHATCAST_MESSAGE_TIME_FORMAT", "%d-%m-%Y-%H-%M-%S")
    s = Settings()
    assert s.dispatch_workers == 8
    assert s.message_time_format == "%d-%m-%Y-%H-%M-%S"
