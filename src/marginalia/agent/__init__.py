"""Agent collaborators: the channel contract, the local process channel, prompts and refs."""

from marginalia.agent.channel import AgentChannel, ChannelComplete, ChannelStream
from marginalia.agent.process import ProcessAgentChannel, find_agent_cli, parse_stream_line
from marginalia.agent.prompts import build_chat_prompt, build_edit_prompt, frame_edit_prompt
from marginalia.agent.refs import parse_refs, resolve_refs_context

__all__ = [
    "AgentChannel",
    "ChannelComplete",
    "ChannelStream",
    "ProcessAgentChannel",
    "build_chat_prompt",
    "build_edit_prompt",
    "find_agent_cli",
    "frame_edit_prompt",
    "parse_refs",
    "parse_stream_line",
    "resolve_refs_context",
]
