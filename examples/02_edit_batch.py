"""
Example 02: Inline Comments and Edit Batches
============================================

Demonstrates the inline-edit workflow:
- Attaching comments (selection + instruction) to a document
- Sending every pending comment as one edit batch
- Watching comment and changelog status as the agent works
- Cancelling a batch that takes too long

Run with the real agent CLI on PATH (the CLI edits the file in place):
    uv run python examples/02_edit_batch.py path/to/note.md
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main(document: str) -> None:
    from marginalia import AgentSessionEngine, EngineConfig, EngineEvent, StoreConfig

    print("=== Marginalia Edit Batch Example ===\n")

    config = EngineConfig(store=StoreConfig(db_path="/tmp/marginalia_example_02.db"))

    async with AgentSessionEngine.open(document, config=config) as engine:
        await engine.load()

        for event in (EngineEvent.COMMENT_UPDATED, EngineEvent.CHANGELOG_UPDATED):
            engine.event_bus.subscribe(
                event, lambda e, payload: print(f"  [{e}] {payload.get('status')}")
            )

        await engine.add_comment(
            "The results were good.", "Say what the results were, with numbers."
        )
        await engine.add_comment("In conclusion,", "Drop this phrase and tighten the sentence.")
        print(f"Pending comments: {len(engine.comments)}\n")

        invocation = await engine.send_edit_batch()
        print(f"Batch {invocation.request_id} sent over {invocation.transport}")

        try:
            await asyncio.wait_for(engine.wait_for_pending(), timeout=300)
        except TimeoutError:
            print("Agent is taking too long, cancelling...")
            await engine.cancel()

        entry = engine.changelogs[0]
        print(f"\nChangelog: {entry.status} - {entry.summary}")
        for comment in engine.comments:
            print(f"  {comment.status:<8} {comment.line_hint}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("usage: 02_edit_batch.py <document.md>")
    asyncio.run(main(sys.argv[1]))
