"""Simple message lookup for learner-facing and API strings.

Supports short encouraging phrases used on routing transitions.
"""

from __future__ import annotations

import zlib

_MESSAGES: dict[str, str] = {
    "delivery.disclaimer": (
        "Note: I couldn't fully double-check this explanation, "
        "so please ask me if anything looks off."
    ),
    "delivery.generation_failed": "Sorry, I had trouble answering that. Could you ask again?",
    "routing.assessment_handoff": (
        "Great work! You've mastered this lesson. Let's test your understanding."
    ),
    "error.pipeline_not_ready": "Service is starting up. Please try again in a moment.",
    "error.session_not_found": "Session not found.",
    "session.ended": "Session ended.",
    "cache.invalidated": "Responder cache invalidated.",
}


_HANDOFF_INTROS: tuple[str, ...] = (
    "Let me bring in {name} to help with this.",
    "{name} is great at this, so I'll pass you over.",
    "I'm connecting you with {name} now.",
)


def handoff_message(responder_name: str) -> str:
    """Return the spoken introduction for a handoff; stable per responder."""
    intro = _HANDOFF_INTROS[zlib.crc32(responder_name.encode("utf-8")) % len(_HANDOFF_INTROS)]
    return intro.format(name=responder_name)


def msg(key: str) -> str:
    """Return a message by key, or the key itself if not found."""
    return _MESSAGES.get(key, key)
