"""Human-readable phrases that pair an OTP email with the screen that asked for it.

A signature such as ``"Quickly Happy Elephant"`` is shown on the verification
page and printed in the email so the user can tell the two belong together.
It is drawn independently of the code and is never checked server-side.
"""

from __future__ import annotations

import secrets

ADVERBS = (
    "Quickly",
    "Slowly",
    "Happily",
    "Eagerly",
    "Gently",
    "Boldly",
    "Quietly",
    "Swiftly",
    "Cheerfully",
    "Gracefully",
    "Brightly",
    "Calmly",
    "Warmly",
    "Smoothly",
    "Lightly",
)

ADJECTIVES = (
    "Happy",
    "Brave",
    "Clever",
    "Gentle",
    "Mighty",
    "Playful",
    "Swift",
    "Wise",
    "Bright",
    "Calm",
    "Noble",
    "Proud",
    "Kind",
    "Bold",
    "Joyful",
)

ANIMALS = (
    "Elephant",
    "Tiger",
    "Dolphin",
    "Eagle",
    "Panda",
    "Fox",
    "Owl",
    "Lion",
    "Penguin",
    "Koala",
    "Wolf",
    "Bear",
    "Deer",
    "Rabbit",
    "Falcon",
)


def generate_signature() -> str:
    return " ".join(
        (
            secrets.choice(ADVERBS),
            secrets.choice(ADJECTIVES),
            secrets.choice(ANIMALS),
        )
    )


__all__ = ["ADJECTIVES", "ADVERBS", "ANIMALS", "generate_signature"]
