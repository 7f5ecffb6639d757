"""Entrypoint: python -m marketplace_chat --conversation 5"""
from __future__ import annotations

import argparse
import asyncio
import logging

from marketplace_chat.app import chat_client
from marketplace_chat.config import settings
from marketplace_chat.domain.events.message_received import MessageReceived
from marketplace_chat.domain.events.typing_changed import TypingChanged
from marketplace_chat.domain.value_objects.enums import EventKind, SessionState
from marketplace_chat.infrastructure.auth.token_store import MemoryTokenStore

logger = logging.getLogger("marketplace_chat.console")


def _log_message(event: MessageReceived) -> None:
    m = event.message
    logger.info("[%d] #%d from %d: %s", m.conversation_id, m.id, m.sender_id, m.content)


def _log_typing(event: TypingChanged) -> None:
    logger.info(
        "[%d] user %d %s typing",
        event.conversation_id, event.user_id, "is" if event.is_typing else "stopped",
    )


def _log_state(state: SessionState) -> None:
    logger.info("connection: %s", state)


async def run(conversation_ids: list[int], token: str | None) -> None:
    credentials = MemoryTokenStore(
        token or settings.AUTH_TOKEN or None,
        expiration_buffer=settings.TOKEN_EXPIRATION_BUFFER,
    )
    async with chat_client(settings, credentials=credentials) as client:
        client.session.on(EventKind.MESSAGE, _log_message, owner="console")
        client.session.on(EventKind.TYPING, _log_typing, owner="console")
        client.session.on(EventKind.STATE_CHANGED, _log_state, owner="console")
        for conversation_id in conversation_ids:
            await client.open_conversation(conversation_id)
        logger.info(
            "Listening on %d conversation(s), %d unread",
            len(conversation_ids), client.unread.total,
        )
        await asyncio.Event().wait()


def main() -> None:
    parser = argparse.ArgumentParser(prog="marketplace_chat", description="Tail live chat events.")
    parser.add_argument("--conversation", "-c", type=int, action="append", default=[])
    parser.add_argument("--token", help="bearer token (defaults to CHAT_AUTH_TOKEN)")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(args.conversation, args.token))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
