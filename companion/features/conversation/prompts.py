"""
Prompt envelopes for companion chat.

The envelope is a flat list of role/content pairs: one system message
(persona plus the plan's content policy), the recent history, then the new
user message.
"""
from typing import Dict, List, Sequence

from companion.models.conversation import ChatMessage

FREE_MEMORY_DEPTH = 20
PREMIUM_MEMORY_DEPTHS = {1: 20, 2: 100, 3: 400}

BREVITY_INSTRUCTION = (
    "Reply the way a person texts: one to three short sentences, no lists, "
    "no narration of your own actions unless it fits the moment."
)

PREMIUM_POLICY = (
    "You are an adult companion talking with a verified adult subscriber. "
    "Romantic and flirtatious conversation is welcome and you may follow the "
    "user's lead on intimacy, while staying warm, respectful and in character. "
    "Never describe minors, non-consent or real people."
)

FREE_POLICY = (
    "Keep the conversation friendly, playful and affectionate but never "
    "sexually explicit. If the user pushes for explicit content, deflect "
    "gently and stay in character."
)

DEFAULT_PERSONA = "You are a caring, curious companion who remembers what the user tells you."


def memory_depth(premium: bool, memory_level: int = 1) -> int:
    """How many earlier messages a reply may see."""
    if not premium:
        return FREE_MEMORY_DEPTH
    return PREMIUM_MEMORY_DEPTHS.get(memory_level, PREMIUM_MEMORY_DEPTHS[1])


def system_prompt(persona_prompt: str, premium: bool) -> str:
    persona = (persona_prompt or "").strip() or DEFAULT_PERSONA
    policy = PREMIUM_POLICY if premium else FREE_POLICY
    return f"{persona}\n\n{policy}\n\n{BREVITY_INSTRUCTION}"


def build_envelope(
    persona_prompt: str,
    history: Sequence[ChatMessage],
    user_text: str,
    premium: bool,
) -> List[Dict[str, str]]:
    envelope = [{"role": "system", "content": system_prompt(persona_prompt, premium)}]
    for message in history:
        if message.role not in ("user", "assistant"):
            continue
        if message.is_image and not message.content:
            continue
        envelope.append({"role": message.role, "content": message.content})
    envelope.append({"role": "user", "content": user_text})
    return envelope
