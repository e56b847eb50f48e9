import logging
import time

import requests

from errors import InvalidToken, SessionNotFound

logger = logging.getLogger(__name__)

POLL_INTERVAL = 2.0
POLL_TIMEOUT = 120.0


class CapturePoller:
    """
    Polls ``GET /api/capture/result`` for a session id the user pasted.

    A 404 only means the agent has not delivered yet, so polling continues
    until the give-up timeout. A 401 is terminal: the token must be
    regenerated.
    """

    def __init__(self, api_url, token, interval=POLL_INTERVAL, timeout=POLL_TIMEOUT,
                 http=None, sleep=time.sleep, clock=time.monotonic):
        self.result_url = api_url.rstrip('/') + '/api/capture/result'
        self.token = token
        self.interval = interval
        self.timeout = timeout
        self.http = http or requests.Session()
        self.sleep = sleep
        self.clock = clock

    def fetch_once(self, session_id):
        """One poll. Returns the result body, or None while the capture is not there yet."""
        try:
            response = self.http.get(
                self.result_url,
                params={'sessionId': session_id, 'token': self.token},
                timeout=10,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Polling capture result failed: {str(e)}")
            return None

        if response.status_code == 401:
            details = response.json().get('details') if response.content else None
            raise InvalidToken(details)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get('result')

    def wait(self, session_id):
        """Poll until the capture arrives; raise SessionNotFound after the timeout."""
        deadline = self.clock() + self.timeout
        attempts = 0
        while True:
            attempts += 1
            result = self.fetch_once(session_id)
            if result is not None:
                logger.info(f"Capture {session_id[:8]}... received after {attempts} polls")
                return result
            if self.clock() + self.interval > deadline:
                logger.info(f"Gave up on capture {session_id[:8]}... after {attempts} polls")
                raise SessionNotFound('Capture not received. Try capturing the page again.')
            self.sleep(self.interval)
