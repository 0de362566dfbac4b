"""
Message senders used by the delivery workers.

A sender takes a rendered message and either returns (delivered), raises
DeliveryError (transient: the job is rescheduled with backoff) or raises
PermanentDeliveryError (the job fails immediately).

Senders run outside any database transaction.
"""

from __future__ import annotations

import os
import threading
from typing import Mapping, Protocol

import httpx

from presale_config.schema import DeliveryConfig
from presale_kernel.domain.templates import RenderedMessage
from presale_kernel.exceptions import ConfigurationError, DeliveryError, PermanentDeliveryError
from presale_kernel.logging_config import get_logger

logger = get_logger("services.senders")

# 4xx responses retried with backoff; every 5xx is retried as well
RETRYABLE_CLIENT_STATUS_CODES = frozenset({408, 425, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUS_CODES


class MessageSender(Protocol):
    def send(self, message: RenderedMessage) -> None:
        ...


class RecordingSender:
    """In-memory sender for local runs and tests.

    ``fail_with`` queues exceptions to raise on the next sends, in order.
    """

    def __init__(self):
        self.sent: list[RenderedMessage] = []
        self._failures: list[Exception] = []
        self._lock = threading.Lock()

    def fail_with(self, *errors: Exception) -> None:
        with self._lock:
            self._failures.extend(errors)

    def send(self, message: RenderedMessage) -> None:
        with self._lock:
            if self._failures:
                raise self._failures.pop(0)
            self.sent.append(message)

    def sent_to(self, recipient: str) -> list[RenderedMessage]:
        with self._lock:
            return [m for m in self.sent if m.recipient == recipient]


class ResendEmailSender:
    """Sends email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        email_from: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self._api_key = api_key
        self._email_from = email_from
        self._api_url = api_url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, message: RenderedMessage) -> None:
        try:
            response = self._client.post(
                self._api_url,
                json={
                    "from": self._email_from,
                    "to": [message.recipient],
                    "subject": message.subject,
                    "html": message.html,
                    "text": message.text,
                },
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Resend request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise DeliveryError(f"Resend connection error: {exc}") from exc

        if response.is_success:
            logger.debug(
                "email_sent",
                extra={"provider_status": response.status_code, "subject": message.subject},
            )
            return

        detail = f"Resend error: {response.status_code} {response.text[:500]}"
        if is_retryable_status(response.status_code):
            raise DeliveryError(detail, provider_status=response.status_code)
        raise PermanentDeliveryError(detail, provider_status=response.status_code)

    def close(self) -> None:
        self._client.close()


def build_sender(config: DeliveryConfig, environ: Mapping[str, str] | None = None) -> MessageSender:
    """
    Construct the sender named by ``delivery.sender``.

    Raises:
        ConfigurationError: the resend sender is selected but its API key
            environment variable is not set.
    """
    if config.sender == "resend":
        env = os.environ if environ is None else environ
        api_key = env.get(config.resend_api_key_env)
        if not api_key:
            raise ConfigurationError(config.resend_api_key_env, "environment variable is not set")
        return ResendEmailSender(
            api_key=api_key,
            email_from=config.email_from,
            api_url=config.resend_api_url,
            timeout=config.request_timeout_seconds,
        )
    return RecordingSender()
