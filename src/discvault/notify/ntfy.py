"""ntfy.sh notification integration."""

import logging

import httpx

from discvault import __version__
from discvault.config import DiscVaultConfig

logger = logging.getLogger(__name__)


class NtfyNotifier:
    """Sends backup notifications via ntfy.sh service."""

    def __init__(self, config: DiscVaultConfig):
        self.config = config
        self.topic_url = config.ntfy_topic
        self.client = httpx.Client(
            timeout=config.ntfy_request_timeout,
            headers={"User-Agent": f"DiscVault/{__version__}"},
        )

    def send_notification(
        self,
        message: str,
        title: str | None = None,
        priority: str = "default",
        tags: str | None = None,
    ) -> bool:
        """Send a notification via ntfy."""
        if not self.topic_url:
            logger.debug("No ntfy topic configured, skipping notification")
            return False

        try:
            headers = {}

            if title:
                # Header values must be latin-1
                try:
                    headers["Title"] = title.encode("latin1").decode("latin1")
                except UnicodeEncodeError:
                    headers["Title"] = title.encode("ascii", errors="ignore").decode(
                        "ascii",
                    )

            if priority != "default":
                headers["Priority"] = priority

            if tags:
                headers["Tags"] = tags

            response = self.client.post(
                self.topic_url,
                data=message.encode("utf-8"),
                headers=headers,
            )

            response.raise_for_status()
            logger.debug(f"Sent notification: {title or message[:50]}")
            return True

        except httpx.RequestError as e:
            logger.exception(f"Failed to send notification: {e}")
            return False
        except httpx.HTTPStatusError as e:
            logger.exception(
                f"Notification service error {e.response.status_code}: {e.response.text}",
            )
            return False

    def notify_backup_started(self, disc_name: str, drive: str) -> bool:
        return self.send_notification(
            f"Started backing up {disc_name} from {drive}",
            title="💿 Backup Started",
            tags="discvault,backup,started",
        )

    def notify_backup_completed(
        self,
        disc_name: str,
        size: str,
        *,
        partial: bool = False,
        files_failed: int = 0,
    ) -> bool:
        """Send notification when a backup finishes."""
        if partial:
            return self.send_notification(
                f"Backup of {disc_name} finished with {files_failed} unreadable "
                f"file(s) ({size} recovered)",
                title="⚠️ Backup Complete (with errors)",
                tags="discvault,backup,partial",
            )
        return self.send_notification(
            f"Backup of {disc_name} complete ({size})",
            title="✅ Backup Complete",
            tags="discvault,backup,completed",
        )

    def notify_backup_failed(self, disc_name: str, error_message: str) -> bool:
        return self.send_notification(
            f"Backup of {disc_name} failed: {error_message}",
            title="❌ Backup Failed",
            priority="high",
            tags="discvault,backup,error",
        )

    def notify_backup_cancelled(self, disc_name: str) -> bool:
        return self.send_notification(
            f"Backup of {disc_name} was cancelled",
            title="⏹️ Backup Cancelled",
            tags="discvault,backup,cancelled",
        )

    def test_notification(self) -> bool:
        """Send a test notification."""
        return self.send_notification(
            "DiscVault notification system is working correctly!",
            title="🧪 Test Notification",
            tags="discvault,test",
        )

    def close(self) -> None:
        self.client.close()
