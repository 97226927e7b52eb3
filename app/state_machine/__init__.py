"""
Conversation lifecycle state machine
"""
from app.state_machine.states import ConversationState, is_valid_transition

__all__ = ["ConversationState", "is_valid_transition"]
