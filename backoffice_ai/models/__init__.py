from .conversation import ConversationTurn, FunctionCall, Role

__all__ = ["ConversationTurn", "FunctionCall", "Role"]
