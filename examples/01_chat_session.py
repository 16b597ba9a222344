"""
Example 01: Chat Session
========================

Demonstrates the simplest end-to-end usage of AgentSessionEngine:
- Opening an engine with open() as an async context manager
- Subscribing to stream updates on the event bus
- Sending chat messages and waiting for the reply
- Reloading the conversation from the store

Run without the agent CLI installed:
    MARGINALIA_MOCK_AGENT=1 uv run python examples/01_chat_session.py

Run with the real agent CLI on PATH:
    uv run python examples/01_chat_session.py
"""

import asyncio
import os
import sys
from collections.abc import Callable
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class EchoChannel:
    """Stand-in agent that streams a canned reply word by word."""

    def __init__(self) -> None:
        self._stream: list[Callable] = []
        self._complete: list[Callable] = []

    async def send_chat(self, request) -> None:
        asyncio.get_running_loop().create_task(self._reply("chat", request.message))

    async def send_edit(self, request) -> None:
        asyncio.get_running_loop().create_task(self._reply("edit", "Edited the document."))

    async def cancel(self, document_path=None) -> None:
        pass

    def on_stream(self, listener):
        self._stream.append(listener)
        return lambda: self._stream.remove(listener)

    def on_complete(self, listener):
        self._complete.append(listener)
        return lambda: self._complete.remove(listener)

    async def _reply(self, kind: str, prompt: str) -> None:
        from marginalia.agent.channel import ChannelComplete, ChannelStream

        text = ""
        for word in f"You said: {prompt}".split():
            await asyncio.sleep(0.05)
            text = f"{text} {word}".strip()
            for listener in list(self._stream):
                listener(ChannelStream(type=kind, content=text))
        for listener in list(self._complete):
            listener(ChannelComplete(type=kind, success=True, content=text))


async def main() -> None:
    from marginalia import AgentSessionEngine, EngineConfig, EngineEvent, StoreConfig
    from marginalia.transport import HostCapabilities

    print("=== Marginalia Chat Session Example ===\n")

    config = EngineConfig(store=StoreConfig(db_path="/tmp/marginalia_example_01.db"))
    capabilities = None
    if os.environ.get("MARGINALIA_MOCK_AGENT"):
        capabilities = HostCapabilities(channel=EchoChannel())

    async with AgentSessionEngine.open(
        "notes/example.md", config=config, capabilities=capabilities
    ) as engine:
        print(f"Transport: {engine.transport_kind}\n")
        await engine.load()

        engine.event_bus.subscribe(
            EngineEvent.STREAM_UPDATED,
            lambda _event, payload: print(f"  ... {payload['content'][-60:]}"),
        )

        questions = [
            "What is the main argument of this note?",
            "Which paragraph is the weakest?",
        ]
        for question in questions:
            print(f"> {question}")
            await engine.send_message(question)
            await engine.wait_for_pending()
            reply = engine.messages[-1]
            marker = " (error)" if reply.is_error else ""
            print(f"  Reply{marker}: {reply.content[:120]}\n")

        print(f"Sessions for this document: {len(engine.sessions)}")
        print(f"Messages in active session: {len(engine.messages)}")

    print("\nEngine closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
