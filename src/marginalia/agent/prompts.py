"""Prompt templates for chat and edit invocations."""

from __future__ import annotations

from collections.abc import Sequence

from jinja2 import Template

from marginalia.models.signals import ChatRequest, EditComment

SECTION_SEPARATOR = "\n\n---\n\n"

EDIT_BATCH_TEMPLATE = Template(
    "Update the file {{ file_path }} with these changes:\n\n"
    "{% for comment in comments %}"
    '{{ loop.index }}. Selected text:\n"""\n{{ comment.selected_text }}\n"""\n'
    "Instruction: {{ comment.instruction }}"
    "{% if not loop.last %}\n\n{% endif %}"
    "{% endfor %}\n\n"
    "Make the changes directly to the file. Be precise and only change what's requested."
)

EDIT_FRAMING_TEMPLATE = Template(
    "{% if file_exists %}"
    "{% if fast %}Edit the file at {{ file_path }}. Read it, apply the changes, and stop. "
    "Do not explain.\n\n"
    "{% else %}Edit the file at {{ file_path }}:\n\n{% endif %}"
    "{% endif %}"
    "{{ prompt }}"
    "{% if refs_context %}\n\n{{ refs_context }}{% endif %}"
)

CHAT_FRAMING_TEMPLATE = Template(
    "You are a writing assistant for this document. You can:\n"
    "1. Edit sections of the current document at {{ document_path }} - when the user asks "
    "you to change, improve, rewrite, or fix something, edit the file directly.\n"
    "2. Create a new document in the same directory - when the user asks for a new "
    "document, summary, or derivative work, create a new file in {{ directory }}.\n"
    "3. Answer questions about the document - when the user asks about content, structure, "
    "or meaning, respond conversationally.\n\n"
    "Be explicit about which action you're taking. Prefer editing the existing file over "
    "creating new ones unless a new document is specifically requested."
)


def build_edit_prompt(file_path: str, comments: Sequence[EditComment]) -> str:
    """Numbered list of selections and instructions for one edit batch."""
    return EDIT_BATCH_TEMPLATE.render(file_path=file_path, comments=comments)


def frame_edit_prompt(
    prompt: str,
    file_path: str,
    *,
    file_exists: bool,
    fast: bool,
    refs_context: str = "",
) -> str:
    """
    Wrap an edit prompt with instructions for the agent.

    ``fast`` models get a terse "apply and stop" framing; a file that does
    not exist yet gets no framing at all.
    """
    return EDIT_FRAMING_TEMPLATE.render(
        prompt=prompt,
        file_path=file_path,
        file_exists=file_exists,
        fast=fast,
        refs_context=refs_context,
    )


def build_chat_prompt(
    request: ChatRequest,
    *,
    document_content: str | None,
    refs_context: str = "",
    image_paths: Sequence[str] = (),
) -> str:
    """
    Assemble the chat prompt: framing, document content, selection, prior
    history, the user message, referenced material and attached images.
    """
    directory = request.document_path.rsplit("/", 1)[0] if "/" in request.document_path else "."
    parts = [
        CHAT_FRAMING_TEMPLATE.render(document_path=request.document_path, directory=directory)
    ]
    if document_content is not None:
        parts.append(
            f"The user is working on a document at {request.document_path}. "
            f"Here is its current content:\n\n{document_content}"
        )
    else:
        parts.append(
            f"The user is working on a document at {request.document_path} "
            "(could not read file)."
        )
    if request.context_selection:
        parts.append(f"The user has selected this text for context:\n\n{request.context_selection}")
    if request.history:
        history = "\n\n".join(f"{entry.role}: {entry.content}" for entry in request.history)
        parts.append(f"Previous conversation:\n\n{history}")
    parts.append(f"User message: {request.message}")
    if refs_context:
        parts.append(f"Additional context from referenced documents:\n\n{refs_context}")
    if image_paths:
        listing = "\n".join(f"- {path}" for path in image_paths)
        parts.append(
            f"The user has attached {len(image_paths)} image(s). "
            f"Read each image file to view them:\n{listing}"
        )
    return SECTION_SEPARATOR.join(parts)
