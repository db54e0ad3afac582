"""Tests unitarios para los middlewares HTTP."""

from unittest.mock import MagicMock

from app.core.middleware import SlidingWindowRateLimiter, get_client_ip, get_status_emoji


class TestSlidingWindowRateLimiter:
    """Tests para el rate limiter por IP."""

    def test_blocks_after_limit_within_window(self):
        limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60)

        assert limiter.hit("1.1.1.1", now=100.0) == (True, 1)
        assert limiter.hit("1.1.1.1", now=110.0) == (True, 0)
        assert limiter.hit("1.1.1.1", now=120.0) == (False, 0)
        # Otro cliente tiene su propia ventana
        assert limiter.hit("2.2.2.2", now=120.0) == (True, 1)

    def test_window_slides(self):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60)

        assert limiter.hit("1.1.1.1", now=100.0)[0]
        assert not limiter.hit("1.1.1.1", now=150.0)[0]
        assert limiter.hit("1.1.1.1", now=161.0)[0]

    def test_idle_clients_are_dropped(self):
        limiter = SlidingWindowRateLimiter(limit=5, window_seconds=60)
        limiter.hit("1.1.1.1", now=100.0)

        limiter.hit("2.2.2.2", now=200.0)

        assert "1.1.1.1" not in limiter._hits


class TestRequestHelpers:
    def test_client_ip_prefers_forwarded_for(self):
        request = MagicMock()
        request.headers = {"X-Forwarded-For": "10.0.0.1, 172.16.0.1", "X-Real-IP": "10.0.0.2"}

        assert get_client_ip(request) == "10.0.0.1"

    def test_client_ip_falls_back_to_connection(self):
        request = MagicMock()
        request.headers = {}
        request.client.host = "127.0.0.1"

        assert get_client_ip(request) == "127.0.0.1"

    def test_status_emoji(self):
        assert get_status_emoji(201) == "✅"
        assert get_status_emoji(302) == "↩️"
        assert get_status_emoji(404) == "⚠️"
        assert get_status_emoji(503) == "❌"
        assert get_status_emoji(100) == "📤"
