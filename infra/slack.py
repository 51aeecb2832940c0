"""Slack webhook notifications for job failures and finished exports."""

import os
from typing import Optional

import httpx
from loguru import logger

# Channel -> env var holding a dedicated webhook. SLACK_WEBHOOK_URL is the fallback.
CHANNEL_WEBHOOKS = {
    "#alerts": "SLACK_ALERTS_WEBHOOK_URL",
    "#exports": "SLACK_EXPORTS_WEBHOOK_URL",
}

MAX_ERROR_CHARS = 500


def get_webhook_url(channel: str = "#alerts") -> Optional[str]:
    default = os.getenv("SLACK_WEBHOOK_URL")
    env_var = CHANNEL_WEBHOOKS.get(channel)
    return os.getenv(env_var, default) if env_var else default


def send_message(
    text: str,
    channel: str = "#alerts",
    webhook_url: Optional[str] = None,
) -> bool:
    """Post `text` (Slack mrkdwn) to a channel's webhook.

    Never raises: returns False when no webhook is configured or the post fails,
    so a Slack outage cannot fail a job or an export.
    """
    url = webhook_url or get_webhook_url(channel)
    if not url:
        logger.debug(f"No Slack webhook for {channel}, skipping")
        return False

    try:
        response = httpx.post(url, json={"text": text}, timeout=10.0)
    except httpx.HTTPError as e:
        logger.error(f"Slack post to {channel} failed: {e}")
        return False

    if response.status_code != 200:
        logger.error(f"Slack rejected message for {channel}: {response.status_code} {response.text}")
        return False

    logger.info(f"Slack message sent to {channel}")
    return True


def send_job_failed_alert(
    job_id: int,
    business_type: str,
    current_step: str,
    error: str,
    channel: str = "#alerts",
) -> bool:
    lines = [
        f"*Job {job_id} failed*",
        f"• Business type: {business_type}",
        f"• Last checkpoint: `{current_step}` (resume continues from here)",
        f"• Error: {error[:MAX_ERROR_CHARS]}",
    ]
    return send_message("\n".join(lines), channel)


def send_export_notification(
    label: str,
    row_count: int,
    location: str,
    channel: str = "#exports",
) -> bool:
    """Announce an uploaded export. `label` names the scope, e.g. "job 42"."""
    lines = [
        f"*Export ready: {label}*",
        f"• Rows: {row_count:,}",
        f"• File: `{location}`",
    ]
    return send_message("\n".join(lines), channel)
