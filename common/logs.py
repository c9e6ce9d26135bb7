import json
from datetime import datetime, timezone

from common.config import INSTANCE_ID


def log_event(event, **fields):
    payload = {
        "event": event,
        "instance_id": INSTANCE_ID,
        "ts": datetime.now(timezone.utc).isoformat(),
        **fields,
    }
    print(json.dumps(payload, default=str), flush=True)
