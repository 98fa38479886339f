import logging

import requests

import config

log = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


def send_email(to: str, subject: str, html: str) -> None:
    """Send one HTML email through the Mailgun messages API."""
    if not (config.MAILGUN_API_KEY and config.MAILGUN_DOMAIN):
        raise EmailDeliveryError("Mailgun not configured. Set MAILGUN_API_KEY and MAILGUN_DOMAIN in .env.")
    try:
        r = requests.post(
            f"{config.MAILGUN_BASE_URL}/{config.MAILGUN_DOMAIN}/messages",
            auth=("api", config.MAILGUN_API_KEY),
            data={
                "from": f"{config.APP_NAME} <noreply@{config.MAILGUN_DOMAIN}>",
                "to": to,
                "subject": subject,
                "html": html,
            },
            timeout=config.HTTP_TIMEOUT,
        )
    except requests.exceptions.RequestException as exc:
        raise EmailDeliveryError(f"Mailgun request failed: {str(exc)[:150]}") from exc
    if r.status_code != 200:
        raise EmailDeliveryError(f"Mailgun error {r.status_code}: {r.text[:200]}")
    log.info("Sent email %r to %s", subject, to)
