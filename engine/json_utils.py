import json
import logging


def safe_json_dumps(value, **kwargs):
    """json.dumps that falls back to ``str`` for values json cannot encode."""
    kwargs.setdefault("default", str)
    kwargs.setdefault("ensure_ascii", False)
    return json.dumps(value, **kwargs)


def log_event(level, message, *, logger=None, **fields):
    payload = {"message": message, **fields}
    target = logger or logging.getLogger()
    try:
        target.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        target.log(level, f"log_event_serialization_failed: {exc} message={message}")
