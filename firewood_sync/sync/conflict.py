"""
Conflict resolution for synchronization.

Arbitration is last-writer-wins on wall-clock timestamps supplied by each
side: the incoming write's localUpdatedAt against the authoritative row's
updatedAt. Ties favor the incoming write.

This assumes reasonably synchronized clocks. Two truly concurrent edits
silently resolve to one side; that is an accepted limitation of the policy.
"""

from dataclasses import dataclass
from datetime import datetime

from ..protocol import ConflictRecord, Entity, Winner


def resolve(local_updated_at: datetime, server_updated_at: datetime) -> Winner:
    """Decide which side wins for one entity.

    Args:
        local_updated_at: Timestamp the client attached to its write
        server_updated_at: updatedAt of the authoritative row

    Returns:
        Winner.LOCAL when local_updated_at >= server_updated_at,
        Winner.SERVER otherwise
    """
    if local_updated_at >= server_updated_at:
        return Winner.LOCAL
    return Winner.SERVER


@dataclass
class ConflictDecision:
    """Outcome of arbitrating one incoming write against a stored row."""

    winner: Winner
    conflict: ConflictRecord | None = None

    @property
    def local_wins(self) -> bool:
        return self.winner == Winner.LOCAL


class ConflictResolver:
    """Applies the last-writer-wins rule and builds conflict reports."""

    def decide(self, local_updated_at: datetime, row: Entity) -> ConflictDecision:
        """Arbitrate an incoming update/delete against the stored row.

        Args:
            local_updated_at: Timestamp the client attached to its write
            row: Current authoritative row

        Returns:
            ConflictDecision, carrying a ConflictRecord when the server wins
        """
        winner = resolve(local_updated_at, row.updated_at)
        if winner == Winner.LOCAL:
            return ConflictDecision(winner=winner)
        return ConflictDecision(winner=winner, conflict=self.server_wins(row))

    def server_wins(self, row: Entity) -> ConflictRecord:
        """Report that row stays authoritative and the client must adopt it."""
        return ConflictRecord(
            entity_type=row.entity_type,
            entity_id=row.id,
            winner=Winner.SERVER,
            resolved_data=row,
        )
