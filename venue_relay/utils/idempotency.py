"""
Idempotency key generation — one format for every claim in the relay.

Format: <scope>|<service_id>|<run_id>|<context_id>|<actor_id>|<step>|<fingerprint>

Rules:
- No timestamps in key (they kill idempotency)
- All fields lowercase, no spaces
- Max length 300 chars
"""
import hashlib
import json
from typing import Optional


# Fixed scope values
SCOPE_TG_UPDATE = "tg_update"
SCOPE_NOTIFY = "notify"

MAX_KEY_LENGTH = 300


def make_idempotency_key(
    scope: str,
    service_id: str,
    run_id: str = "none",
    context_id: str = "none",
    actor_id: str = "none",
    step: str = "none",
    fingerprint: str = "-",
) -> str:
    """
    Build a deterministic idempotency key.

    Examples:
        # Inbound update
        make_idempotency_key("tg_update", "venue", actor_id="tg:12345", step="upd:67890")

        # Staff chat notification about a new order batch
        make_idempotency_key("notify", "venue", context_id="event:10", actor_id="chat:777", step="new_batch")
    """
    parts = [
        scope.lower(),
        service_id.lower(),
        str(run_id).lower(),
        str(context_id).lower(),
        str(actor_id).lower(),
        step.lower(),
        fingerprint.lower(),
    ]
    key = "|".join(part.replace(" ", "_") for part in parts)

    if len(key) > MAX_KEY_LENGTH:
        raise ValueError(f"Idempotency key too long ({len(key)} chars): {key[:80]}...")

    return key


def update_key(service_id: str, update_id: int, chat_id: int | None) -> str:
    """Key guarding the side effects of one inbound update."""
    actor = f"tg:{chat_id}" if chat_id is not None else "none"
    return make_idempotency_key(
        SCOPE_TG_UPDATE, service_id, actor_id=actor, step=f"upd:{update_id}"
    )


def notification_key(service_id: str, kind: str, event_id: int, chat_id: int) -> str:
    """Key guarding one notification about one event to one chat."""
    return make_idempotency_key(
        SCOPE_NOTIFY,
        service_id,
        context_id=f"event:{event_id}",
        actor_id=f"chat:{chat_id}",
        step=kind,
    )


def make_fingerprint(data: dict, fields: Optional[list] = None) -> str:
    """
    Create a short hash from essential fields of a payload.
    Returns first 16 hex chars of SHA-256.
    """
    if fields:
        data = {k: v for k, v in data.items() if k in fields}

    serialized = json.dumps(data, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()[:16]
