"""Error taxonomy shared by repositories, services and routers.

Every error carries the HTTP status it maps to; the API layer turns them into
``{"detail": ..., "error": <class name>}`` responses.
"""


class ChatError(Exception):

    status_code = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__


class Unauthenticated(ChatError):
    status_code = 401


class Unauthorized(ChatError):
    status_code = 403


class NotAParticipant(Unauthorized):
    pass


class NotFound(ChatError):
    status_code = 404


class ConversationNotFound(NotFound):

    def __init__(self, conversation_id: str = "") -> None:
        super().__init__(f"Conversation {conversation_id} not found" if conversation_id else "Conversation not found")


class InvalidInput(ChatError):
    status_code = 400


class InvalidPayload(InvalidInput):
    pass


class InvalidName(InvalidInput):
    pass


class NotAGroup(InvalidInput):
    pass


class InsufficientParticipants(InvalidInput):
    pass


class Conflict(ChatError):
    """Uniqueness race that re-reading the winner could not settle."""

    status_code = 409


class Transient(ChatError):
    """Storage or network failure. Safe to retry only for reads and idempotent writes."""

    status_code = 503
