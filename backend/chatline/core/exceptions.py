# backend/chatline/core/exceptions.py
"""
Domain-specific exceptions for Chatline.

These exceptions carry short, user-safe messages. The realtime session layer
forwards ``message`` to the client in an ``error`` event. Implementation
details belong in the server log, never in ``message``.
"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(DomainException):
    """Raised when business validation fails."""


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""


# Specific messaging exceptions


class NotParticipantException(ForbiddenException):
    """Raised when a user acts on a conversation they do not belong to."""

    def __init__(self, conversation_id: str):
        super().__init__(
            message="You are not a participant of this conversation",
            code="NOT_PARTICIPANT",
            details={"conversation_id": conversation_id},
        )


class ConversationNotFoundException(NotFoundException):
    """Raised when a conversation id does not resolve."""

    def __init__(self, conversation_id: str):
        super().__init__(
            message="Conversation not found",
            code="CONVERSATION_NOT_FOUND",
            details={"conversation_id": conversation_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
