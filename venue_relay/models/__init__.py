from venue_relay.models.inbound_update import InboundStatus, TelegramInboundUpdate
from venue_relay.models.outbox_message import OutboxStatus, TelegramOutboxMessage
from venue_relay.models.idempotency_claim import IdempotencyClaim
from venue_relay.models.dialog_state import TelegramDialogState

__all__ = [
    "InboundStatus",
    "TelegramInboundUpdate",
    "OutboxStatus",
    "TelegramOutboxMessage",
    "IdempotencyClaim",
    "TelegramDialogState",
]
