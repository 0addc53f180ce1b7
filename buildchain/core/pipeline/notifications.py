"""
Channel notifications - progress and outcome messages to the requester.

Channel transports (Telegram, WhatsApp, ...) live outside the pipeline and
plug in through the ChannelNotifier protocol.
"""

from typing import Optional, Protocol

import structlog

logger = structlog.get_logger()


class ChannelNotifier(Protocol):
    async def send(self, requester_id: str, channel: str, text: str) -> None:
        ...


class LogNotifier:
    """Default notifier: writes outgoing messages to the log."""

    async def send(self, requester_id: str, channel: str, text: str) -> None:
        logger.info("channel_message", requester=requester_id, channel=channel, text=text)


async def safe_send(
    notifier: Optional[ChannelNotifier],
    requester_id: str,
    channel: str,
    text: str,
) -> None:
    """Deliver a message; transport failures are logged, never raised."""
    if notifier is None:
        return
    try:
        await notifier.send(requester_id, channel, text)
    except Exception as e:
        logger.warning("channel_send_failed", requester=requester_id, channel=channel, error=str(e))
