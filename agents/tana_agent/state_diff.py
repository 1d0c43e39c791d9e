from __future__ import annotations

from collections.abc import Mapping

from agents.tana_agent.models import Appeared, ChangeEvent, Removed, Transitioned


def diff_snapshots(
    previous: Mapping[str, str],
    current: Mapping[str, str],
) -> list[ChangeEvent]:
    """Diff two card -> bucket snapshots.

    Args:
        previous: Snapshot from the last polling tick.
        current: Snapshot from this tick.

    Returns:
        One event per card whose membership changed, ordered by ascending
        card id. Cards that stayed in the same bucket produce nothing.
    """

    events: list[ChangeEvent] = []

    for card_id in sorted(set(previous) | set(current)):
        if card_id not in previous:
            events.append(Appeared(card_id=card_id, bucket=current[card_id]))
        elif card_id not in current:
            events.append(Removed(card_id=card_id, last_bucket=previous[card_id]))
        elif previous[card_id] != current[card_id]:
            events.append(
                Transitioned(
                    card_id=card_id,
                    from_bucket=previous[card_id],
                    to_bucket=current[card_id],
                )
            )

    return events
