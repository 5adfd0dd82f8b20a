import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from storage.database import Database

logger = logging.getLogger(__name__)

DEFAULT_BOTTLE_TYPE = "10.5kg"


class GasBottleError(ValueError):
    """Invalid gas bottle operation (bad input or conflicting state)."""


@dataclass
class GasBottle:
    id: int
    type: str
    start_date: date
    end_date: date | None
    notes: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: dict) -> "GasBottle":
        return cls(
            id=row["id"],
            type=row["type"],
            start_date=date.fromisoformat(row["start_date"]),
            end_date=date.fromisoformat(row["end_date"]) if row["end_date"] else None,
            notes=row["notes"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "notes": self.notes,
            "created_at": self.created_at,
            "days": bottle_days(self),
        }


def bottle_days(bottle: GasBottle, today: date | None = None) -> int:
    """Days the bottle lasted (or has been in use so far)."""
    end = bottle.end_date or today or date.today()
    return (end - bottle.start_date).days


def _parse_date(value, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise GasBottleError(f"{field} must be a YYYY-MM-DD date") from None


class GasTracker:
    """Hand-entered log of gas bottle swaps. At most one bottle is in use."""

    def __init__(self, db: Database):
        self.db = db

    def list_bottles(self) -> list[GasBottle]:
        return [GasBottle.from_row(r) for r in self.db.get_gas_bottles()]

    def create_bottle(
        self, start_date, bottle_type: str | None = None, notes: str | None = None
    ) -> GasBottle:
        if not start_date:
            raise GasBottleError("startDate is required")
        start = _parse_date(start_date, "startDate")

        if self.db.get_active_gas_bottle() is not None:
            raise GasBottleError(
                "There is already an active gas bottle. Mark the current bottle as empty first."
            )

        bottle_id = self.db.insert_gas_bottle({
            "type": bottle_type or DEFAULT_BOTTLE_TYPE,
            "start_date": start.isoformat(),
            "end_date": None,
            "notes": notes,
            "created_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        })
        logger.info("Created gas bottle %d (started %s)", bottle_id, start)
        return GasBottle.from_row(self.db.get_gas_bottle(bottle_id))

    def mark_empty(self, bottle_id: int, end_date) -> GasBottle | None:
        """Set the end date. Returns None if the bottle does not exist."""
        if not end_date:
            raise GasBottleError("endDate is required")
        end = _parse_date(end_date, "endDate")

        row = self.db.get_gas_bottle(bottle_id)
        if row is None:
            return None
        if end < date.fromisoformat(row["start_date"]):
            raise GasBottleError("endDate must not be before startDate")

        self.db.update_gas_bottle_end(bottle_id, end.isoformat())
        logger.info("Gas bottle %d marked empty on %s", bottle_id, end)
        return GasBottle.from_row(self.db.get_gas_bottle(bottle_id))

    def delete_bottle(self, bottle_id: int) -> bool:
        deleted = self.db.delete_gas_bottle(bottle_id)
        if deleted:
            logger.info("Deleted gas bottle %d", bottle_id)
        return deleted
