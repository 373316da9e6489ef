"""
Middleware pipeline for bot handlers.

A handler is an async callable taking one inbound event. A middleware takes a
handler and returns a new handler adding one cross-cutting behavior.
``apply_middleware(handler, [a, b, c])`` returns ``a(b(c(handler)))``: the
first middleware listed runs first on entry and last on exit.
"""

import functools
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime

from botqueue.config.logging import get_logger
from botqueue.v1.bot.events import CallbackQuery, Event, Message, resolve_chat_id
from botqueue.v1.core.exceptions import BotQueueException, ErrorCode, handle_error
from botqueue.v1.core.registries import BotTransport

logger = get_logger(__name__)

Handler = Callable[[Event], Awaitable[None]]
Middleware = Callable[[Handler], Handler]

GENERIC_USER_MESSAGE = "Sorry, an error occurred while processing your request."
CALLBACK_FAILURE_ALERT = "An error occurred. Please try again."
INVALID_CALLBACK_DATA = "Invalid callback data"

USER_MESSAGES = {
    ErrorCode.VALIDATION_ERROR: "Invalid input: {message}",
    ErrorCode.AUTHENTICATION_ERROR: "Authentication failed. Please try again.",
    ErrorCode.AUTHORIZATION_ERROR: "You do not have permission to perform this action.",
    ErrorCode.NOT_FOUND_ERROR: "Not found: {message}",
    ErrorCode.SERVICE_UNAVAILABLE: (
        "This service is temporarily unavailable. Please try again later."
    ),
}

MISSING_PARAM_MESSAGES = {
    "text": "Text message is required for this command.",
    "photo": "Photo is required for this command.",
    "document": "Document is required for this command.",
}


def handler_name(handler: Handler) -> str:
    return getattr(handler, "__name__", handler.__class__.__name__)


def user_message_for(error: Exception) -> str:
    """The message shown to a user when ``error`` escapes a handler."""
    if not isinstance(error, BotQueueException):
        return GENERIC_USER_MESSAGE

    template = USER_MESSAGES.get(error.error_code)
    if template is None:
        return error.message
    return template.format(message=error.message)


def track_activity(handler: Handler) -> Handler:
    """Log who triggered ``handler`` and when."""

    @functools.wraps(handler)
    async def wrapper(event: Event) -> None:
        actor = event.from_user
        logger.info(
            "User activity",
            handler=handler_name(handler),
            user_id=actor.id if actor else None,
            username=actor.username if actor else None,
            timestamp=datetime.now(UTC).isoformat(),
        )

        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "Handler failed",
                handler=handler_name(handler),
                user_id=actor.id if actor else None,
                error=str(e),
            )
            raise

    return wrapper


def validate_params(transport: BotTransport, required_params: Sequence[str]) -> Middleware:
    """
    Reject events missing any of ``required_params``.

    Recognized params are ``text``, ``photo`` and ``document`` on messages and
    ``callback_data`` on callback queries. A rejected event gets one message
    back and never reaches the handler.
    """

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(event: Event) -> None:
            for param in required_params:
                if param == "callback_data":
                    if isinstance(event, CallbackQuery) and event.data:
                        continue
                    if isinstance(event, CallbackQuery) and not event.ack.answered:
                        event.ack.answered = True
                        await transport.answer_callback_query(
                            event.id, text=INVALID_CALLBACK_DATA
                        )
                        return

                    chat_id = resolve_chat_id(event)
                    if chat_id is not None:
                        await transport.send_message(chat_id, INVALID_CALLBACK_DATA)
                    return

                message = event.message if isinstance(event, CallbackQuery) else event
                if isinstance(message, Message) and getattr(message, param, None):
                    continue

                chat_id = resolve_chat_id(event)
                if chat_id is not None:
                    await transport.send_message(
                        chat_id,
                        MISSING_PARAM_MESSAGES.get(
                            param, f"{param.capitalize()} is required for this command."
                        ),
                    )
                return

            await handler(event)

        return wrapper

    return middleware


def handle_callback_query(transport: BotTransport) -> Middleware:
    """Answer the callback query exactly once, whether the handler fails or not."""

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(event: Event) -> None:
            if not isinstance(event, CallbackQuery):
                await handler(event)
                return

            try:
                await handler(event)
            except Exception as e:
                user_id = event.from_user.id if event.from_user else None
                error_message = handle_error(e, user_id, handler_name(handler))["error"][
                    "message"
                ]
                try:
                    if not event.ack.answered:
                        event.ack.answered = True
                        await transport.answer_callback_query(
                            event.id, text=CALLBACK_FAILURE_ALERT, show_alert=True
                        )

                    chat_id = resolve_chat_id(event)
                    if chat_id is not None:
                        await transport.send_message(
                            chat_id, f"Sorry, an error occurred: {error_message}"
                        )
                except Exception:
                    logger.exception(
                        "Failed to report callback query error", callback_query_id=event.id
                    )
                return

            if not event.ack.answered:
                event.ack.answered = True
                await transport.answer_callback_query(event.id)

        return wrapper

    return middleware


def error_boundary(transport: BotTransport) -> Middleware:
    """Turn any escaping error into a single user-facing message."""

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(event: Event) -> None:
            try:
                await handler(event)
            except Exception as e:
                user_id = event.from_user.id if event.from_user else None
                handle_error(e, user_id, handler_name(handler))

                chat_id = resolve_chat_id(event)
                if chat_id is None:
                    return
                try:
                    await transport.send_message(chat_id, user_message_for(e))
                except Exception:
                    logger.exception(
                        "Failed to send error message", chat_id=chat_id, user_id=user_id
                    )

        return wrapper

    return middleware


def apply_middleware(handler: Handler, middlewares: Sequence[Middleware]) -> Handler:
    """Wrap ``handler`` so that ``middlewares[0]`` is the outermost layer."""
    for middleware in reversed(middlewares):
        handler = middleware(handler)
    return handler


def create_controller(
    handler: Handler,
    transport: BotTransport,
    *,
    track_user_activity: bool = True,
    handle_errors: bool = True,
    required_params: Sequence[str] = (),
    is_callback_query: bool = False,
    custom_middleware: Sequence[Middleware] = (),
) -> Handler:
    """
    Build a bot handler with the standard middleware stack.

    Layers from innermost to outermost: custom middleware (in the given
    order), activity tracking, parameter validation, callback query
    acknowledgment and the error boundary. The error boundary therefore sees
    failures from every other layer.
    """
    layers: list[Middleware] = list(custom_middleware)

    if track_user_activity:
        layers.append(track_activity)
    if required_params:
        layers.append(validate_params(transport, required_params))
    if is_callback_query:
        layers.append(handle_callback_query(transport))
    if handle_errors:
        layers.append(error_boundary(transport))

    return apply_middleware(handler, list(reversed(layers)))
