"""
Dispatcher — routes a normalized message to its handler.

The route table is fixed: each type maps to a handler slot and a flag saying
whether the type is only accepted over a private (per-recipient) channel.
Duplicate-GUID handling belongs to the handlers.
"""

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from diaspora_fed.context import ImporterContext
from diaspora_fed.errors import PrivacyViolation, UnsupportedMessageType
from diaspora_fed.models.message import MessageType, NormalizedMessage

Handler = Callable[[ImporterContext, NormalizedMessage], Awaitable[Any]]

logger = logging.getLogger(__name__)

# type -> requires private channel
ROUTES: dict[MessageType, bool] = {
    MessageType.ACCOUNT_MIGRATION: True,
    MessageType.ACCOUNT_DELETION: False,
    MessageType.COMMENT: False,
    MessageType.CONTACT: True,
    MessageType.CONVERSATION: True,
    MessageType.LIKE: False,
    MessageType.MESSAGE: True,
    MessageType.PARTICIPATION: True,
    MessageType.PHOTO: False,
    MessageType.POLL_PARTICIPATION: False,
    MessageType.PROFILE: True,
    MessageType.RESHARE: False,
    MessageType.RETRACTION: False,
    MessageType.STATUS_MESSAGE: False,
}


async def _ignore(context: ImporterContext, message: NormalizedMessage) -> bool:
    # Photos arrive inside status messages as well; poll answers are not supported
    logger.debug(f"Ignoring {message.type.value} {message.guid}")
    return True


DEFAULT_HANDLERS: dict[MessageType, Handler] = {
    MessageType.PHOTO: _ignore,
    MessageType.POLL_PARTICIPATION: _ignore,
}


def requires_private(type_: MessageType) -> bool:
    return ROUTES[type_]


class Dispatcher:
    def __init__(self, handlers: Optional[Mapping[MessageType, Handler]] = None):
        self._handlers: dict[MessageType, Handler] = {**DEFAULT_HANDLERS, **(handlers or {})}

    def register(self, type_: MessageType, handler: Handler) -> None:
        self._handlers[type_] = handler

    async def dispatch(self, context: ImporterContext, message: NormalizedMessage, private: bool) -> Any:
        """Invoke the handler for `message` exactly once, or raise without invoking it."""
        if message.type not in ROUTES:
            raise UnsupportedMessageType(str(message.type))

        logger.debug(
            f"Received message type {message.type.value} from {message.sender} for user {context.uid}"
        )

        if ROUTES[message.type] and not private:
            logger.info(f"Message with type {message.type.value} is not private, quitting.")
            raise PrivacyViolation(message.type.value)

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.info(f"No handler registered for {message.type.value}")
            raise UnsupportedMessageType(message.type.value)

        return await handler(context, message)
