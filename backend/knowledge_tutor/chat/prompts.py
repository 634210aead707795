"""Message assembly for grounded tutor answers."""

from __future__ import annotations

from typing import Sequence

from knowledge_tutor.models.entities import Message, Persona, ScoredChunk

GENERIC_TUTOR_PROMPT = (
    "You are a helpful AI tutor. Answer questions based on the provided context. "
    "If the context doesn't contain the answer, say so clearly."
)


def persona_system_prompt(persona: Persona) -> str:
    return (
        f"You are {persona.name}. {persona.behavior_prompt}\n\n"
        f"Speak in a {persona.tone} tone. Base your answers ONLY on the provided context. "
        "If the context doesn't contain the answer, say so."
    )


def build_context(chunks: Sequence[ScoredChunk]) -> str:
    return "\n\n".join(chunk.text for chunk in chunks)


def build_messages(
    query: str,
    persona: Persona | None = None,
    context: str = "",
    history: Sequence[Message] = (),
) -> list[dict[str, str]]:
    """System prompt, optional context, prior turns, then the new question."""
    if persona is not None and persona.behavior_prompt:
        system = persona_system_prompt(persona)
    else:
        system = GENERIC_TUTOR_PROMPT
    messages = [{"role": "system", "content": system}]
    if context:
        messages.append({"role": "system", "content": f"Context from the document:\n\n{context}"})
    messages.extend({"role": message.role, "content": message.content} for message in history)
    messages.append({"role": "user", "content": query})
    return messages


__all__ = ["GENERIC_TUTOR_PROMPT", "persona_system_prompt", "build_context", "build_messages"]
