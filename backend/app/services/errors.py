"""Error taxonomy shared by the chat services.

Every error carries a machine-readable ``kind`` and a human readable message.
The HTTP layer maps the family to a status code; clients switch on ``kind``.
"""

from __future__ import annotations

from fastapi import status


class ChatError(Exception):
    """Base class for rejections raised by the chat services."""

    kind: str = "chat_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Chat operation failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


# Validation errors -------------------------------------------------------


class ValidationFailed(ChatError):
    kind = "validation_failed"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request is invalid"


class EmptyMessage(ValidationFailed):
    kind = "empty_message"
    default_message = "Message must contain content, attachments or a payload"


class MessageTooLong(ValidationFailed):
    kind = "message_too_long"
    default_message = "Message exceeds the maximum length"


class AttachmentTooLarge(ValidationFailed):
    kind = "attachment_too_large"
    default_message = "Attachment exceeds the maximum file size"


class AttachmentTypeNotAllowed(ValidationFailed):
    kind = "attachment_type_not_allowed"
    default_message = "Attachment type is not allowed in this chat"


class NameRequired(ValidationFailed):
    kind = "name_required"
    default_message = "A name is required for this chat type"


class InvalidParticipantCount(ValidationFailed):
    kind = "invalid_participant_count"
    default_message = "Invalid number of participants for this chat type"


class ForwardDepthExceeded(ValidationFailed):
    kind = "forward_depth_exceeded"
    default_message = "Message has been forwarded too many times"


class InvalidPayload(ValidationFailed):
    kind = "invalid_payload"
    default_message = "Payload does not match the message type"


class InvalidMention(ValidationFailed):
    kind = "invalid_mention"
    default_message = "Mention is not valid for this message"


class UnknownUser(ValidationFailed):
    kind = "unknown_user"
    default_message = "User does not exist"


class InvalidReply(ValidationFailed):
    kind = "invalid_reply"
    default_message = "Reply target is not available"


class InvalidDeleteScope(ValidationFailed):
    kind = "invalid_delete_scope"
    default_message = "Delete scope is not allowed for this message"


class NotAPoll(ValidationFailed):
    kind = "not_a_poll"
    default_message = "Message is not a poll"


class InvalidPollOption(ValidationFailed):
    kind = "invalid_poll_option"
    default_message = "Poll option selection is not valid"


# Permission errors -------------------------------------------------------


class PermissionDenied(ChatError):
    kind = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Insufficient permissions"


class NotParticipant(PermissionDenied):
    kind = "not_participant"
    default_message = "Not a participant of this chat"


class MissingPermission(PermissionDenied):
    kind = "missing_permission"

    def __init__(self, permission: object, message: str | None = None) -> None:
        self.permission = permission
        value = getattr(permission, "value", permission)
        super().__init__(message or f"Missing permission '{value}'")


# Consistency errors ------------------------------------------------------


class ConsistencyError(ChatError):
    kind = "consistency_error"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Operation conflicts with the current state"


class NotMessageOwner(ConsistencyError):
    kind = "not_message_owner"
    default_message = "Only the author can modify this message"


class MessageDeleted(ConsistencyError):
    kind = "message_deleted"
    default_message = "Message has been deleted"


class ChatArchived(ConsistencyError):
    kind = "chat_archived"
    default_message = "Chat is archived"


class ReactionsDisabled(ConsistencyError):
    kind = "reactions_disabled"
    default_message = "Reactions are disabled in this chat"


class ThreadingDisabled(ConsistencyError):
    kind = "threading_disabled"
    default_message = "Threads are disabled in this chat"


class EditingDisabled(ConsistencyError):
    kind = "editing_disabled"
    default_message = "Editing is disabled in this chat"


class DeletingDisabled(ConsistencyError):
    kind = "deleting_disabled"
    default_message = "Deleting is disabled in this chat"


class ForwardingDisabled(ConsistencyError):
    kind = "forwarding_disabled"
    default_message = "Forwarding is disabled in this chat"


class PinningDisabled(ConsistencyError):
    kind = "pinning_disabled"
    default_message = "Pinning is disabled in this chat"


class FileSharingDisabled(ConsistencyError):
    kind = "file_sharing_disabled"
    default_message = "File sharing is disabled in this chat"


class MentionsDisabled(ConsistencyError):
    kind = "mentions_disabled"
    default_message = "Mentions are disabled in this chat"


class InvalidTransition(ConsistencyError):
    kind = "invalid_transition"
    default_message = "Delivery status transition is not allowed"


class CancellationNotAllowed(ConsistencyError):
    kind = "cancellation_not_allowed"
    default_message = "Only messages that are still sending can be cancelled"


class PollClosed(ConsistencyError):
    kind = "poll_closed"
    default_message = "Poll is closed"


# Lookup errors -----------------------------------------------------------


class NotFound(ChatError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ChatNotFound(NotFound):
    kind = "chat_not_found"
    default_message = "Chat not found"


class MessageNotFound(NotFound):
    kind = "message_not_found"
    default_message = "Message not found"


class AnnouncementNotFound(NotFound):
    kind = "announcement_not_found"
    default_message = "Announcement not found"


# Transport errors --------------------------------------------------------


class DeliveryFailed(ChatError):
    """Persistence or network failure while sending a message."""

    kind = "delivery_failed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Message could not be delivered"
