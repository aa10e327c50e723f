"""Discord notifications for repeated poll failures."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

import requests

LOGGER = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10


class FailureNotifier:
    """Sends one alert once consecutive fetch failures reach ``threshold``."""

    def __init__(
        self,
        webhook_url: str | None,
        threshold: int = 5,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.threshold = threshold
        self.username = username
        self.avatar_url = avatar_url
        self.consecutive_failures = 0
        self.alert_sent = False

    def record_success(self) -> None:
        if self.consecutive_failures:
            LOGGER.info(
                "Train positions fetch recovered after %d failures", self.consecutive_failures
            )
        self.consecutive_failures = 0
        self.alert_sent = False

    def record_failure(self, feed_url: str, exc: Exception) -> bool:
        self.consecutive_failures += 1
        LOGGER.warning(
            "Recorded polling failure for %s (consecutive=%d)",
            feed_url,
            self.consecutive_failures,
        )
        if self.threshold <= 0 or self.alert_sent or self.consecutive_failures < self.threshold:
            return False
        if not self.webhook_url:
            LOGGER.warning("No Discord webhook configured; not alerting for %s", feed_url)
            return False

        if self._post(self.alert_content(feed_url, exc)):
            self.alert_sent = True
            LOGGER.warning(
                "Sent Discord alert after %d consecutive failures for %s",
                self.consecutive_failures,
                feed_url,
            )
        return self.alert_sent

    def alert_content(self, feed_url: str, exc: Exception) -> str:
        return "\n".join(
            [
                ":warning: Amtrak poller alert",
                f"Feed: `{feed_url}`",
                f"Consecutive failures: **{self.consecutive_failures}** (threshold {self.threshold})",
                f"Timestamp (UTC): {datetime.now(timezone.utc).isoformat()}",
                f"Last error: `{type(exc).__name__}: {exc}`",
            ]
        )

    def _post(self, content: str) -> bool:
        payload: dict[str, object] = {"content": content}
        if self.username:
            payload["username"] = self.username
        if self.avatar_url:
            payload["avatar_url"] = self.avatar_url
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException:
            LOGGER.exception("Failed to post Discord failure alert")
            return False
        return True
