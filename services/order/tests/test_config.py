import pytest

from app.config import Settings


class TestSettings:

    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.feed_backend == "poll"
        assert settings.order_poll_interval == 1.0
        assert settings.notification_poll_interval == 0.5
        assert settings.tz.key == "UTC"

    def test_reads_environment(self):
        settings = Settings.from_env({
            "ORDER_FEED_BACKEND": "PUSH",
            "REDIS_URL": "redis://cache:6379/2",
            "COUNTER_MAX_RETRIES": "9",
            "ORDER_TIMEZONE": "Asia/Ho_Chi_Minh",
            "LOG_LEVEL": "debug",
        })
        assert settings.feed_backend == "push"
        assert settings.redis_url == "redis://cache:6379/2"
        assert settings.counter_max_retries == 9
        assert settings.tz.key == "Asia/Ho_Chi_Minh"
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("env", [
        {"ORDER_FEED_BACKEND": "carrier-pigeon"},
        {"ORDER_TIMEZONE": "Mars/Olympus_Mons"},
        {"COUNTER_MAX_RETRIES": "0"},
    ])
    def test_rejects_bad_values(self, env):
        with pytest.raises(ValueError):
            Settings.from_env(env)
