"""Tests for the capture polling client."""

from unittest import mock

import pytest

from capture.client import CapturePoller
from errors import InvalidToken, SessionNotFound


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def response(status, body=None):
    res = mock.Mock()
    res.status_code = status
    res.content = b'{}' if body is not None else b''
    res.json.return_value = body or {}
    return res


@pytest.fixture
def clock():
    return FakeClock()


def poller(http, clock, **kwargs):
    return CapturePoller('https://wishlist.example/', 'ab' * 32, http=http, sleep=clock.sleep, clock=clock, **kwargs)


def test_polls_until_capture_arrives(clock):
    http = mock.Mock()
    http.get.side_effect = [response(404, {}), response(404, {}), response(200, {'result': {'success': True}})]

    result = poller(http, clock, interval=2).wait('s' * 32)

    assert result == {'success': True}
    assert http.get.call_count == 3
    assert clock.now == 4
    http.get.assert_called_with(
        'https://wishlist.example/api/capture/result',
        params={'sessionId': 's' * 32, 'token': 'ab' * 32},
        timeout=10,
    )


def test_gives_up_after_timeout(clock):
    http = mock.Mock()
    http.get.return_value = response(404, {})

    with pytest.raises(SessionNotFound):
        poller(http, clock, interval=2, timeout=10).wait('s' * 32)
    assert http.get.call_count == 6


def test_invalid_token_stops_polling(clock):
    http = mock.Mock()
    http.get.return_value = response(401, {'details': 'Capture token expired.'})

    with pytest.raises(InvalidToken) as excinfo:
        poller(http, clock).wait('s' * 32)
    assert excinfo.value.details == 'Capture token expired.'
    assert http.get.call_count == 1
