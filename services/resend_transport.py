# services/resend_transport.py
"""
Resend HTTP API client

Sends one email per request to https://api.resend.com/emails. Connection
errors, 429 and 5xx responses are retried with exponential backoff when
``max_retries`` is above zero; any other 4xx fails immediately.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from core.errors import EmailTransportError

logger = logging.getLogger(__name__)

RESEND_API_URL = 'https://api.resend.com/emails'


@dataclass
class OutboundEmail:
    """Message handed to a transport"""
    to: List[str]
    subject: str
    html: str
    sender: str
    text: Optional[str] = None
    reply_to: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict:
        payload = {
            'from': self.sender,
            'to': self.to,
            'subject': self.subject,
            'html': self.html,
        }
        if self.text:
            payload['text'] = self.text
        if self.reply_to:
            payload['reply_to'] = self.reply_to
        if self.tags:
            payload['tags'] = [{'name': k, 'value': v} for k, v in self.tags.items()]
        return payload


class ResendTransport:
    """Delivers ``OutboundEmail`` objects through the Resend API"""

    def __init__(self,
                 api_key: Optional[str],
                 timeout: float = 10,
                 max_retries: int = 0,
                 retry_delay: float = 5,
                 session: Optional[requests.Session] = None,
                 api_url: str = RESEND_API_URL):
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.api_url = api_url

    def send(self, message: OutboundEmail) -> Optional[str]:
        """
        Send ``message`` and return the provider's message id

        Raises:
            EmailTransportError: when the API key is missing or every attempt failed
        """
        if not self.api_key:
            raise EmailTransportError('RESEND_API_KEY is not configured')

        attempt = 0
        while True:
            try:
                return self._post(message)
            except EmailTransportError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                logger.warning(f"Email send attempt {attempt} failed ({e}); retrying in {delay}s")
                time.sleep(delay)

    def _post(self, message: OutboundEmail) -> Optional[str]:
        try:
            response = self.session.post(
                self.api_url,
                json=message.to_payload(),
                headers={
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json',
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EmailTransportError(f"Email provider unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise EmailTransportError(
                f"Email provider returned {response.status_code}: {self._error_message(response)}",
                status=response.status_code,
                retryable=retryable,
            )

        try:
            return response.json().get('id')
        except ValueError:
            logger.warning("Email provider returned a non-JSON success response")
            return None

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get('message') or body.get('error') or body)
        return str(body)[:200]
