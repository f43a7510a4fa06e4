import logging

import requests

logger = logging.getLogger("k3sctl.notify")


def send_webhook(webhook_url, summary, timeout=10):
    """Post the one-line run summary. Never raises."""
    payload = {"text": f"k3sctl: {summary.headline()}"}
    try:
        response = requests.post(webhook_url, json=payload, timeout=timeout)
        if response.status_code >= 300:
            logger.error(f"Webhook failed: {response.status_code} {response.text}")
            return False
        logger.info("Webhook notification sent.")
        return True
    except requests.RequestException as e:
        logger.error(f"Webhook error: {str(e)}")
        return False
