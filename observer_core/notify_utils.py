import os
from datetime import datetime, timezone

import requests

from observer_core.image_utils import format_digest_short
from observer_core.models import InventoryRecord

EVENT_UPDATE_AVAILABLE = 'update_available'


def update_payload(record: InventoryRecord) -> dict:
    return {
        'event': EVENT_UPDATE_AVAILABLE,
        'ts': datetime.now(timezone.utc).isoformat(),
        'id': record.id,
        'image': record.display_name,
        'tag': record.tag or 'latest',
        'digest': format_digest_short(record.digest),
        'source': record.source,
        'stack': record.stack,
        'service': record.service,
        'message': record.update_message,
    }


def notify_update_available(record: InventoryRecord, logger) -> bool:
    """POST an update event to WEBHOOK_URL. Returns False when not delivered."""
    url = os.getenv('WEBHOOK_URL')
    if not url:
        return False
    try:
        resp = requests.post(url, json=update_payload(record), timeout=5)
    except requests.exceptions.RequestException as e:
        logger.warning(f"Webhook notify failed: {e}")
        return False
    if not 200 <= resp.status_code < 300:
        logger.warning(f"Webhook returned {resp.status_code} for {record.display_name}")
        return False
    return True
