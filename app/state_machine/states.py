"""
Conversation lifecycle states and the allowed transitions between them
"""
from enum import Enum


class ConversationState(str, Enum):
    """Interaction mode of a conversation"""

    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # pick one candidate, or yes/no
    AWAITING_BATCH_ITEM = "awaiting_batch_item"  # resolving a multi-item batch
    WAITING_CLOSE = "waiting_close"  # idle timer armed
    CLOSED = "closed"


# States in which the user owes the bot an answer; covered by the timeout sweep
AWAITING_STATES = frozenset({
    ConversationState.AWAITING_CONFIRMATION,
    ConversationState.AWAITING_BATCH_ITEM,
})


CONVERSATION_TRANSITIONS = {
    ConversationState.IDLE: [
        ConversationState.IDLE,
        ConversationState.AWAITING_CONFIRMATION,
        ConversationState.AWAITING_BATCH_ITEM,
        ConversationState.WAITING_CLOSE,  # scheduleClose
        ConversationState.CLOSED,  # sweep of idle rows never armed
    ],
    ConversationState.AWAITING_CONFIRMATION: [
        ConversationState.IDLE,
        ConversationState.AWAITING_CONFIRMATION,  # re-prompt
        ConversationState.CLOSED,  # timeout sweep
    ],
    ConversationState.AWAITING_BATCH_ITEM: [
        ConversationState.IDLE,
        ConversationState.AWAITING_BATCH_ITEM,
        ConversationState.CLOSED,  # timeout sweep
    ],
    ConversationState.WAITING_CLOSE: [
        ConversationState.IDLE,  # cancelClose
        ConversationState.WAITING_CLOSE,  # reschedule
        ConversationState.CLOSED,  # fired job / sweep
    ],
    # Absorbing until the next inbound message reopens it
    ConversationState.CLOSED: [ConversationState.IDLE],
}


def is_valid_transition(current: ConversationState | str, target: ConversationState | str) -> bool:
    try:
        current_state = ConversationState(current)
        target_state = ConversationState(target)
    except ValueError:
        return False
    return target_state in CONVERSATION_TRANSITIONS[current_state]
