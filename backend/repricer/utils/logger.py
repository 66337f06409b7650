import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from repricer.utils.token_utils import mask_token

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("ebay_repricer")


class EbayConnectionLogger:
    """Bounded in-memory journal of eBay token/API events.

    Every payload passes through ``_sanitize_credentials`` before it is kept
    or logged, so callers may hand over request bodies as-is.
    """

    SENSITIVE_KEYS = (
        "cert_id", "client_secret", "access_token", "refresh_token",
        "password", "authorization", "app_id", "client_id",
    )

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_ebay_event(
        self,
        event_type: str,
        description: str,
        user_id: Optional[str] = None,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "user_id": user_id,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "response_data": self._sanitize_credentials(response_data) if response_data else None,
            "status": status,
            "error": error
        }

        self.logs.append(log_entry)

        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{event_type}] {description}"
        if user_id:
            log_msg = f"{log_msg} user_id={user_id}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        sanitized = data.copy()

        for key in self.SENSITIVE_KEYS:
            if key in sanitized and sanitized[key] is not None:
                sanitized[key] = mask_token(str(sanitized[key]))

        return sanitized

    def get_logs(self, limit: Optional[int] = None, user_id: Optional[str] = None) -> list:
        logs = self.logs
        if user_id:
            logs = [entry for entry in logs if entry.get("user_id") == user_id]
        if limit:
            return logs[-limit:]
        return logs


ebay_logger = EbayConnectionLogger()
