class LmDispatchError(Exception):
    """Base class for agent dispatch errors"""


class TransportError(LmDispatchError):
    """The language model call itself failed"""

    def __init__(self, message: str, model_id: str = None):
        super().__init__(message)
        self.message = message
        self.model_id = model_id


class ConversationNotFound(LmDispatchError):
    """No conversation is registered under the requested id"""

    def __init__(self, conversation_id: int):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
