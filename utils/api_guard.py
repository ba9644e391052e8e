from urllib.parse import urlparse

from utils.logger import get_logger

api_log = get_logger("API_MONITOR")   # → data/logs/api_monitor.log


# ============================
# HELPERS
# ============================

def short_url(url: str) -> str:
    """Return domain+path only, no query params (may carry secrets)."""
    try:
        p = urlparse(url)
        return f"{p.netloc}{p.path}"
    except ValueError:
        return url.split("?", 1)[0][:80]


def _status_tag(status: int, error: str = "") -> str:
    if error:
        return f"ERR={error[:60]}"
    if status == 429:
        return "RATE_LIMIT(429)"
    if status in (401, 403):
        return f"AUTH({status})"
    if status == 404:
        return "NOT_FOUND(404)"
    if status == 405:
        return "METHOD_NOT_ALLOWED(405)"
    if status >= 500:
        return f"SERVER_ERR({status})"
    if status >= 400:
        return f"CLIENT_ERR({status})"
    if status == 0:
        return "TIMEOUT/CONN"
    return f"OK({status})"


def log_api_call(method: str, url: str, status: int, latency_ms: float,
                 provider: str = "market", key_id: str = "", error: str = "", note: str = ""):
    """
    Write one structured line to api_monitor.log.

    Format:
      METHOD | PROVIDER | endpoint | STATUS_TAG | 42ms [| key=XX] [| note]

    Only the key id is ever logged, never the key value.
    """
    parts = [method, provider, short_url(url), _status_tag(status, error), f"{latency_ms:.0f}ms"]
    if key_id:
        parts.append(f"key={key_id}")
    if note:
        parts.append(note)

    msg = " | ".join(parts)

    if error or status >= 500:
        api_log.error(msg)
    elif status >= 400:
        api_log.warning(msg)
    else:
        api_log.info(msg)
