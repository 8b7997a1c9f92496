from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib import error, request

logger = logging.getLogger(__name__)

INFO = "info"
WARNING = "warning"
CRITICAL = "critical"


@dataclass
class AlertEvent:
    level: str
    title: str
    message: str
    context: Dict[str, str] = field(default_factory=dict)


class WebhookNotifier:
    """Posts alert events as JSON. Without a URL, events are only logged."""

    def __init__(self, webhook_url: Optional[str] = None, timeout_sec: int = 5, source: str = "funding-hedge"):
        self.webhook_url = webhook_url
        self.timeout_sec = timeout_sec
        self.source = source

    def send(self, event: AlertEvent) -> bool:
        log = logger.error if event.level == CRITICAL else logger.warning
        log("[alert] %s: %s %s", event.title, event.message, event.context or "")
        if not self.webhook_url:
            return False

        body = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": self.source,
            "level": event.level,
            "title": event.title,
            "message": event.message,
            "context": {k: str(v) for k, v in event.context.items()},
        }
        req = request.Request(
            self.webhook_url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_sec) as resp:
                return 200 <= resp.status < 300
        except (error.URLError, OSError) as exc:
            logger.warning("alert delivery failed: %s", exc)
            return False
