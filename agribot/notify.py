import logging

import requests

logger = logging.getLogger("agribot.notify")

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"


def push(text: str, token: str | None, user: str | None) -> None:
    """Send an operator alert through Pushover. Unconfigured means silent."""
    if not token or not user:
        return
    try:
        response = requests.post(
            PUSHOVER_URL,
            data={
                "token": token,
                "user": user,
                "title": "Agriculture Assistant - Alert",
                "message": text,
            },
            timeout=5,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Pushover delivery failed: %s", e)
