"""Human-in-the-loop notifications.

When a login hits a CAPTCHA the automation can't get past on its own, the
orchestrator opens a portal onto the live browser and hands its URL to a
person through one or more notifiers.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import requests
from rich.console import Console
from rich.panel import Panel

from gatepass.exceptions import NotificationError
from gatepass.logging import get_logger

if TYPE_CHECKING:
    from gatepass.config import GatepassSettings

LOG = get_logger(__name__)

WEBHOOK_TIMEOUT = 15  # seconds


@dataclass(frozen=True)
class PortalNotification:
    """Payload sent to an operator.

    Attributes:
        portal_url: URL that opens the live browser session.
        identity: Account being logged in.
        reason: What the operator needs to do.
    """

    portal_url: str
    identity: str
    reason: str = "captcha"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @property
    def message(self) -> str:
        return (
            f"Login for {self.identity} needs a human ({self.reason}). "
            f"Open {self.portal_url} and complete the challenge."
        )


@runtime_checkable
class Notifier(Protocol):
    """A channel that can alert an operator."""

    async def notify(self, notification: PortalNotification) -> None:
        """Deliver ``notification``.

        Raises:
            NotificationError: If delivery fails.
        """
        ...


class ConsoleNotifier:
    """Print the portal link to the terminal (stderr)."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    async def notify(self, notification: PortalNotification) -> None:
        LOG.info(
            "human_action_required",
            user=notification.identity,
            reason=notification.reason,
            portal_url=notification.portal_url,
        )
        self._console.print(
            Panel(
                f"[bold]{notification.identity}[/bold] hit a {notification.reason} challenge.\n\n"
                f"Open [cyan]{notification.portal_url}[/cyan]\n"
                "and complete it. The login continues automatically afterwards.",
                title="Action Required",
                border_style="yellow",
            )
        )


class WebhookNotifier:
    """POST the notification as JSON to a webhook URL."""

    def __init__(self, url: str, *, timeout: float = WEBHOOK_TIMEOUT) -> None:
        self.url = url
        self.timeout = timeout

    def _post(self, notification: PortalNotification) -> None:
        payload = {**notification.to_dict(), "message": notification.message}
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NotificationError(f"Webhook notification failed: {exc}") from exc

    async def notify(self, notification: PortalNotification) -> None:
        await asyncio.to_thread(self._post, notification)
        LOG.info("webhook_notification_sent", user=notification.identity)


class MultiNotifier:
    """Fan a notification out to several channels.

    A failing channel is logged and skipped; ``NotificationError`` is raised
    only if every channel failed.
    """

    def __init__(self, notifiers: list[Notifier]) -> None:
        self.notifiers = notifiers

    async def notify(self, notification: PortalNotification) -> None:
        errors: list[NotificationError] = []
        for notifier in self.notifiers:
            try:
                await notifier.notify(notification)
            except NotificationError as exc:
                LOG.warning(
                    "notification_channel_failed",
                    channel=type(notifier).__name__,
                    error=str(exc),
                )
                errors.append(exc)
        if errors and len(errors) == len(self.notifiers):
            raise NotificationError(
                f"All {len(errors)} notification channels failed; last error: {errors[-1]}"
            )


def build_notifier(settings: GatepassSettings) -> Notifier:
    """Build the notifier chain for the given settings.

    The console notifier is always present; a webhook notifier is added when
    ``notification_webhook_url`` is configured.
    """
    notifiers: list[Notifier] = [ConsoleNotifier()]
    if settings.notification_webhook_url:
        notifiers.append(WebhookNotifier(settings.notification_webhook_url))
    return MultiNotifier(notifiers)
