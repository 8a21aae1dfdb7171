class MessagingError(RuntimeError):
    pass


class ConversationNotFound(MessagingError):
    def __init__(self, conversation_id):
        super().__init__("Conversation not found")
        self.conversation_id = conversation_id


class ConversationAccessDenied(MessagingError):
    def __init__(self, message: str = "Unauthorized access to conversation"):
        super().__init__(message)


class MessagingValidationError(MessagingError):
    pass


class InvalidStatusTransition(MessagingError):
    def __init__(self, current, target):
        super().__init__(f"Cannot change conversation status from {current.value} to {target.value}")
        self.current = current
        self.target = target
