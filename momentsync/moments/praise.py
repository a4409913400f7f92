"""Offline praise shown until the server's enriched praise arrives."""

import random
from typing import Optional

OFFLINE_PRAISE = (
    "That's it. Small stuff adds up.",
    "Look at you, doing things.",
    "Every little bit matters.",
    "Nice. You're making moves.",
    "One step at a time. This was one.",
    "Progress isn't always loud.",
    "You showed up. That's the hardest part.",
    "Boom. Done. Next.",
    "Little wins are still wins.",
    "You did something. That's everything.",
    "Not nothing. That's what that was.",
    "Gold star. You've earned it.",
    "Action over perfection. Nailed it.",
    "Small, but mighty.",
    "That counts. Don't let anyone tell you otherwise.",
)


def pick_offline_praise(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(OFFLINE_PRAISE)
