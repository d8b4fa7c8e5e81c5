#!/usr/bin/env python3
"""
Interactive QConnect client.

Type a request to generate a query; slash commands manage conversations
and feedback. Use --message to send a single request and exit.
"""

import argparse
import asyncio
from typing import List, Optional

from services.common.http_errors import (
    QConnectAPIException,
    SessionBusyError,
    exception_to_response,
)
from services.common.logging_config import (
    get_logger,
    log_service_shutdown,
    log_service_startup,
    setup_service_logging,
)
from services.qconnect.app import QConnectApp
from services.qconnect.directives import DirectiveRegistry
from services.qconnect.directory import format_conversation_date
from services.qconnect.models import FeedbackType, Message, MessageRole, SendResult
from services.qconnect.settings import get_settings

logger = get_logger(__name__)

HELP_TEXT = """
Commands:
  /new                 start a new conversation
  /list                list your conversations
  /search <term>       search conversations by title or id
  /open <id>           switch to a conversation
  /delete <id>         delete a conversation
  /retry <feedback>    ask for an improved version of the last query
  /up, /down           vote on the last query
  /sync                push the oldest pending vote to the server
  /directives          list available @DIRECTIVES
  /history             show the current conversation
  /quit                exit
"""


def render_message(message: Message) -> str:
    if message.role == MessageRole.USER:
        return f"👤 You: {message.content}"
    prefix = "❌" if message.is_error else ("⚠️" if message.is_degraded else "🤖")
    label = f"{message.label}:\n" if message.label else ""
    thinking = ""
    if message.thinking:
        thinking = "\n" + "\n".join(f"   · {step}" for step in message.thinking)
    return f"{prefix} {label}{message.content}{thinking}"


def last_exchange(messages: List[Message]) -> Optional[tuple]:
    """The most recent (user, assistant) pair whose answer is a real query."""
    for index in range(len(messages) - 1, 0, -1):
        candidate = messages[index]
        if candidate.role == MessageRole.ASSISTANT and not candidate.is_error:
            previous = messages[index - 1]
            if previous.role == MessageRole.USER:
                return previous, candidate
    return None


async def confirm_delete(conversation_id: str) -> bool:
    answer = await asyncio.to_thread(
        input,
        f"⚠️ {conversation_id} contains verified queries; deleting it removes their "
        "feedback too. Delete anyway? [y/N] ",
    )
    return answer.strip().lower() in ("y", "yes")


class QConnectShell:
    def __init__(self, app: QConnectApp):
        self.app = app

    def show_welcome(self) -> None:
        print("🔎 QConnect: describe the data you want, get a query back.")
        print(f"   Conversation: {self.app.store.active_id or 'none'}")
        print("   Type /help for commands.")

    def show_result(self, result: SendResult) -> None:
        print(render_message(result.assistant_message))

    async def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the shell should exit."""
        command, _, arg = line.partition(" ")
        arg = arg.strip()
        command = command.lower()

        if command in ("/quit", "/exit"):
            return False
        if command == "/help":
            print(HELP_TEXT)
        elif command == "/new":
            conversation = await self.app.new_conversation()
            if conversation:
                print(f"✅ Started {conversation.id}")
            else:
                print("❌ Could not start a new conversation")
        elif command == "/list":
            conversations = await self.app.list_conversations()
            if self.app.directory.error:
                print(f"❌ {self.app.directory.error}")
            self._print_conversations(conversations)
        elif command == "/search":
            self._print_conversations(self.app.search_conversations(arg))
        elif command == "/open":
            conversation = await self.app.select(arg)
            if conversation:
                print(f"✅ Opened {conversation.id}: {conversation.title}")
                for message in self.app.messages:
                    print(render_message(message))
            else:
                print(f"❌ Could not open {arg}")
        elif command == "/delete":
            result = await self.app.delete_conversation(arg, confirm_delete)
            if result.deleted:
                print(f"🗑️ Deleted {arg}")
            elif result.cancelled:
                print("Deletion cancelled")
            else:
                print(f"❌ {result.error}")
        elif command == "/retry":
            exchange = last_exchange(self.app.messages)
            if exchange is None or not arg:
                print("Usage: /retry <what is wrong with the last query>")
            else:
                user, assistant = exchange
                self.show_result(await self.app.retry(user.content, assistant.content, arg))
        elif command in ("/up", "/down"):
            exchange = last_exchange(self.app.messages)
            if exchange is None:
                print("Nothing to vote on yet")
            else:
                vote = FeedbackType.POSITIVE if command == "/up" else FeedbackType.NEGATIVE
                if self.app.vote(exchange[1], vote):
                    print(f"👍 Recorded ({self.app.ledger.pending_count} pending)")
                else:
                    print(f"Already voted {self.app.ledger.get(exchange[1].id).value}")
        elif command == "/sync":
            result = await self.app.sync_feedback()
            print(("✅ " if result.success else "❌ ") + result.message)
        elif command == "/directives":
            if not self.app.settings.enable_directives:
                print("Directives are disabled")
            else:
                for directive in self.app.directives.directives:
                    print(f"  @{directive.name:<8} {directive.description}")
        elif command == "/history":
            for message in self.app.messages:
                print(render_message(message))
        else:
            print(f"Unknown command {command}, type /help")
        return True

    def unknown_directives(self, text: str) -> List[str]:
        if not self.app.settings.enable_directives:
            return []
        return [
            name
            for name in DirectiveRegistry.extract(text)
            if self.app.directives.get(name) is None
        ]

    def _print_conversations(self, conversations) -> None:
        if not conversations:
            print("No conversations")
            return
        for c in conversations:
            marker = "*" if c.id == self.app.store.active_id else " "
            when = format_conversation_date(c.last_accessed_at or c.created_at)
            print(f" {marker} {c.id}  {c.title}  ({when})")

    async def chat_loop(self) -> None:
        while True:
            try:
                line = (await asyncio.to_thread(input, "\n👤 You: ")).strip()
            except EOFError:
                break
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not await self.handle_command(line):
                        break
                    continue
                unknown = self.unknown_directives(line)
                if unknown:
                    print(f"⚠️ Unknown directive(s): {', '.join('@' + n for n in unknown)}")
                self.show_result(await self.app.send(line))
            except QConnectAPIException as e:
                self.show_error(e)

    def show_error(self, exc: Exception) -> None:
        error = exception_to_response(exc)
        logger.warning(error.message, error_type=error.type, details=error.details)
        prefix = "⏳" if isinstance(exc, SessionBusyError) else "❌"
        print(f"{prefix} {error.message}")


async def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="QConnect query assistant")
    parser.add_argument("--user", default=settings.default_user_id, help="User id")
    parser.add_argument("--conversation", help="Open this conversation on start")
    parser.add_argument("--message", help="Send a single message and exit")
    parser.add_argument("--model", help=f"Generation model (default {settings.default_model})")
    parser.add_argument(
        "--db-type", help=f"Database type (default {settings.default_database_type})"
    )
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args()

    if not args.user:
        parser.error("--user is required (or set QCONNECT_USER_ID)")

    setup_service_logging("qconnect", log_level=args.log_level, log_format="text")
    log_service_startup("qconnect", api_url=settings.api_url, user_id=args.user)

    app = QConnectApp(args.user, settings)
    if args.model:
        app.controller.model = args.model
    if args.db_type:
        app.controller.database_type = args.db_type

    shell = QConnectShell(app)
    try:
        await app.start()
        if args.conversation:
            await app.select(args.conversation)

        if args.message:
            shell.show_result(await app.send(args.message))
            return

        shell.show_welcome()
        await shell.chat_loop()
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
    finally:
        await app.aclose()
        log_service_shutdown("qconnect")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
