from leadflow.models.conversation_state import ConversationStateRecord

__all__ = ["ConversationStateRecord"]
