"""Slack integration: notifications for run milestones.

Posts to a Slack incoming webhook when:
- A run pauses for a human decision
- A run reaches ready_for_merge
- A run fails
"""

from __future__ import annotations

import logging
import os

import httpx

logger = logging.getLogger(__name__)


class SlackNotifier:
    """Minimal Slack webhook notifier."""

    def __init__(
        self,
        webhook_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url or os.environ.get("ORCHESTRAL_SLACK_WEBHOOK", "")
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._webhook_url)

    async def notify(self, message: str) -> bool:
        """Post a message to Slack via webhook. Returns success."""
        if not self.configured:
            logger.debug("Slack not configured, skipping notification")
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                resp = await client.post(self._webhook_url, json={"text": message})
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Slack notification failed: %s", e)
            return False

    async def notify_human_needed(self, run_id: str, consultation_id: str, question: str = "") -> bool:
        text = f":raising_hand: *{run_id}* is waiting for a human decision on `{consultation_id}`"
        if question:
            text += f": {question}"
        return await self.notify(text)

    async def notify_ready_for_merge(self, run_id: str, iteration: int) -> bool:
        return await self.notify(
            f":white_check_mark: *{run_id}* passed the gate on iteration {iteration} "
            f"and is ready for merge"
        )

    async def notify_run_failed(self, run_id: str, reason: str) -> bool:
        return await self.notify(f":x: *{run_id}* failed: {reason}")
