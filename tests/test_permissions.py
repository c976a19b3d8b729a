import pytest

from switchboard.service.errors import PermissionDenied, RateLimitExceeded
from switchboard.service.permissions import PermissionManager, RateLimit, ToolPermissions


class Clock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


def test_permissions_from_dict_accepts_both_spellings():
    perms = ToolPermissions.from_dict({"channels": ["whatsapp"], "rateLimit": {"requests": 2, "window": 30}})
    assert perms.channels == ["whatsapp"]
    assert perms.rate_limit == RateLimit(requests=2, window_seconds=30)

    legacy = ToolPermissions.from_dict({"rate_limit": {"requestCount": 5, "windowSeconds": 10}})
    assert legacy.rate_limit == RateLimit(requests=5, window_seconds=10)
    assert ToolPermissions.from_dict(None).channels == []


class TestChannelPermissions:
    def test_empty_allow_list_permits_every_channel(self):
        manager = PermissionManager()
        manager.check_permission("lookup", "email", ToolPermissions())
        manager.check_permission("lookup", "email", None)

    def test_channel_outside_allow_list_is_denied(self):
        manager = PermissionManager()
        with pytest.raises(PermissionDenied) as excinfo:
            manager.check_permission("lookup", "email", ToolPermissions(channels=["whatsapp"]))
        assert excinfo.value.status_code == 403


class TestRateLimit:
    def test_fixed_window_counts_and_resets(self):
        clock = Clock()
        manager = PermissionManager(clock=clock)
        perms = ToolPermissions(rate_limit=RateLimit(requests=2, window_seconds=60))

        manager.check_rate_limit("lookup", "u1", "whatsapp", perms)
        manager.check_rate_limit("lookup", "u1", "whatsapp", perms)
        with pytest.raises(RateLimitExceeded) as excinfo:
            manager.check_rate_limit("lookup", "u1", "whatsapp", perms)
        assert excinfo.value.retry_after_seconds == 60
        assert excinfo.value.detail["retryAfter"] == 60

        clock.now += 60
        manager.check_rate_limit("lookup", "u1", "whatsapp", perms)
        assert manager.get_rate_limit_status("lookup", "u1", "whatsapp")["count"] == 1

    def test_counters_are_keyed_per_user_and_channel(self):
        manager = PermissionManager(clock=Clock())
        perms = ToolPermissions(rate_limit=RateLimit(requests=1, window_seconds=60))

        manager.check_rate_limit("lookup", "u1", "whatsapp", perms)
        manager.check_rate_limit("lookup", "u2", "whatsapp", perms)
        manager.check_rate_limit("lookup", "u1", "telegram", perms)
        assert manager.size() == 3

    def test_reset_and_sweep(self):
        clock = Clock()
        manager = PermissionManager(clock=clock)
        perms = ToolPermissions(rate_limit=RateLimit(requests=1, window_seconds=10))
        manager.check_rate_limit("a", "u1", "whatsapp", perms)
        manager.check_rate_limit("b", "u1", "whatsapp", perms)

        manager.reset_rate_limit("a", "u1", "whatsapp")
        manager.check_rate_limit("a", "u1", "whatsapp", perms)

        clock.now += 11
        assert manager.sweep() == 2
        assert manager.get_rate_limit_status("a", "u1", "whatsapp") is None
