"""Interactive chat with a streaming agent backend.

Demonstrates:
- Configuring the client from AGENTSTREAM_* variables or flags
- Rendering the reply incrementally with ChatController.subscribe
- Cancelling a turn with Ctrl-C and clearing the conversation

Usage:
    uv run --env-file=.env examples/chat_example.py --agent sales_agent
    uv run examples/chat_example.py --url http://localhost:4000 --agent sales_agent --idle-timeout 60 --trace

Commands:
    /clear   empty the conversation
    /quit    exit
"""

import argparse
import asyncio
import logging
import signal

from agentstream.chat import ChatController
from agentstream.config import Settings
from agentstream.message import Conversation, MessageRole, MessageStatus

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    handlers=[
        logging.FileHandler('agentstream.log'),
    ]
)


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from agentstream.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


class ReplyPrinter:
    """Prints the streaming assistant message as it grows."""

    def __init__(self):
        self.message_id = None
        self.printed = 0
        self.steps = 0

    def reset(self):
        self.message_id = None
        self.printed = 0
        self.steps = 0

    def __call__(self, conversation: Conversation):
        if not conversation.messages:
            return
        message = conversation.messages[-1]
        if message.role is not MessageRole.ASSISTANT:
            return
        if message.id != self.message_id:
            self.message_id = message.id
            self.printed = 0
            self.steps = 0
            print("Assistant: ", end="", flush=True)

        for step in message.thinking_steps[self.steps:]:
            print(f"\n  [{step}]", end="", flush=True)
        if len(message.thinking_steps) > self.steps:
            print()
        self.steps = len(message.thinking_steps)

        if message.status is not MessageStatus.ERROR:
            print(message.text[self.printed:], end="", flush=True)
            self.printed = len(message.text)


def print_details(controller: ChatController):
    message = controller.messages[-1] if controller.messages else None
    if message is None:
        return
    if message.status is MessageStatus.ERROR:
        print(f"\n{message.error}\n")
        return
    print()
    for query in message.sql_queries:
        print(f"  SQL: {query.sql}")
    for chart in message.charts:
        print(f"  Chart ({chart.type})")
    for number, annotation in message.citations():
        print(f"  [{number}] {annotation.title or 'Reference'} {annotation.link or ''}".rstrip())
    print()


async def main():
    parser = argparse.ArgumentParser(description="Streaming agent chat")
    parser.add_argument("--url", default=None, help="Backend URL")
    parser.add_argument("--agent", default=None, help="Agent id")
    parser.add_argument("--idle-timeout", type=float, default=None)
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("agentstream-chat")

    settings = Settings.from_env()
    overrides = {
        "backend_url": args.url,
        "agent_id": args.agent,
        "idle_timeout": args.idle_timeout,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        settings = Settings(**{**settings.model_dump(), **overrides})
    if not settings.agent_id:
        raise SystemExit("--agent or AGENTSTREAM_AGENT_ID is required")

    loop = asyncio.get_running_loop()
    controller = ChatController(settings=settings)
    printer = ReplyPrinter()
    controller.subscribe(printer)

    print(f"Chatting with {settings.agent_id} at {settings.backend_url}")
    print("Ctrl-C cancels a reply, /clear empties the chat, /quit or Ctrl-D exits.\n")

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            command = user_input.strip()
            if command == "/quit":
                break
            if command == "/clear":
                controller.clear_messages()
                printer.reset()
                print("Conversation cleared.\n")
                continue

            loop.add_signal_handler(signal.SIGINT, controller.cancel_request)
            try:
                await controller.send_message(user_input)
            finally:
                loop.remove_signal_handler(signal.SIGINT)
            print_details(controller)
    finally:
        await controller.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nGoodbye!")
