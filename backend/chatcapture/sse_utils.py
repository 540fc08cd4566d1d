import json


def sse_event(event_type: str, data: dict) -> str:
    """Format a Server-Sent Event string; ``data`` keys sit beside ``type``."""
    payload = {"type": event_type, **data}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
