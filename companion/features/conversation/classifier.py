"""Detects chat turns that ask the companion for a picture."""
import re
from typing import Optional

_MEDIA = r"(pic|pics|picture|pictures|photo|photos|image|images|selfie|selfies|snap|nude|nudes)"
_VERBS = r"(send|show|give|make|create|generate|draw|take|get|share)"

IMAGE_REQUEST_PATTERNS = [
    re.compile(rf"\b{_VERBS}\b.*\b{_MEDIA}\b", re.IGNORECASE),
    re.compile(rf"\b(can|could|may)\s+i\s+(see|get|have)\b.*\b{_MEDIA}\b", re.IGNORECASE),
    re.compile(r"\bwhat\s+do\s+you\s+look\s+like\b", re.IGNORECASE),
    re.compile(r"\b(can|could|may)\s+i\s+see\s+you\b", re.IGNORECASE),
    re.compile(r"\b(skicka|visa|ge\s+mig|ta)\b.*\b(bild|bilder|foto|fotot|selfie)\b", re.IGNORECASE),
    re.compile(r"\bhur\s+ser\s+du\s+ut\b", re.IGNORECASE),
]

_SUBJECT = re.compile(rf"\b{_MEDIA}\s+(of|with|where|wearing|in)\s+(?P<subject>.+)$", re.IGNORECASE)
_SWEDISH_SUBJECT = re.compile(r"\b(bild|foto|selfie)\s+(på|av|med|där)\s+(?P<subject>.+)$", re.IGNORECASE)
_FILLER = re.compile(r"^(hey|hi|babe|baby|please|pls|can you|could you|would you)[,!\s]+", re.IGNORECASE)


def is_image_request(text: Optional[str]) -> bool:
    if not text or not text.strip():
        return False
    return any(pattern.search(text) for pattern in IMAGE_REQUEST_PATTERNS)


def extract_image_prompt(text: str) -> str:
    """
    Pull the requested subject out of a picture request.

    "send me a picture of you at the beach" -> "you at the beach". Falls back
    to the whole message with greetings and trailing punctuation stripped.
    """
    cleaned = text.strip()
    for pattern in (_SUBJECT, _SWEDISH_SUBJECT):
        match = pattern.search(cleaned)
        if match:
            subject = match.group("subject").strip(" .!?")
            if subject:
                return subject

    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _FILLER.sub("", cleaned)
    return cleaned.strip(" .!?") or text.strip()
