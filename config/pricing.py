"""Rental price table used when computing a booking's payment amount."""

from __future__ import annotations

from typing import Iterable, Optional

# Prices in NOK. Update this table when the board changes the rental rates.
# "Små møter" is charged per attendee; every other space is a flat rate.
ROOM_PRICES_NOK = {
    "Peisestue": 1500,
    "Salen": 3000,
    "Hele lokalet": 4000,
    "Bryllupspakke": 6000,
}
PER_PERSON_SPACE = "Små møter"
PER_PERSON_PRICE_NOK = 30
DEFAULT_MEETING_ATTENDEES = 10
ORE_PER_KRONE = 100

KNOWN_SPACES = frozenset(ROOM_PRICES_NOK) | {PER_PERSON_SPACE}


def calculate_amount(spaces: Iterable[str], attendees: Optional[int] = None) -> int:
    """Return the rental price in øre for the selected spaces.

    Per-person pricing falls back to ``DEFAULT_MEETING_ATTENDEES`` when the
    attendee count is missing or zero. Unknown spaces contribute nothing;
    callers validate space names before pricing.
    """
    total_nok = 0
    for space in spaces:
        if space == PER_PERSON_SPACE:
            total_nok += PER_PERSON_PRICE_NOK * (attendees or DEFAULT_MEETING_ATTENDEES)
        else:
            total_nok += ROOM_PRICES_NOK.get(space, 0)
    return total_nok * ORE_PER_KRONE
