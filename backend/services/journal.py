from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from backend.models import JournalEntry
from backend.assistant.state import DraftTradeEntry

UPDATABLE_FIELDS = (
    "pair", "type", "entry_price", "stop_loss", "take_profit", "exit_price",
    "position_size", "pnl", "status", "notes", "validation_result", "screenshot_url",
    "emotions", "confidence_level", "strategy", "time_frame", "trade_source",
)

# Fields the derived PnL is computed from
PNL_INPUTS = ("type", "entry_price", "exit_price", "position_size")


def compute_pnl(side: str, entry_price: float, exit_price: float, position_size: Optional[float]) -> float:
    side_mult = 1 if side == "buy" else -1
    return round((exit_price - entry_price) * side_mult * (position_size or 1.0), 2)


def entry_to_dict(entry: JournalEntry) -> dict:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "date": entry.date.isoformat() if entry.date else None,
        "pair": entry.pair,
        "type": entry.type,
        "entry_price": entry.entry_price,
        "stop_loss": entry.stop_loss,
        "take_profit": entry.take_profit,
        "exit_price": entry.exit_price,
        "position_size": entry.position_size,
        "pnl": entry.pnl,
        "status": entry.status,
        "notes": entry.notes,
        "validation_result": entry.validation_result,
        "screenshot_url": entry.screenshot_url,
        "emotions": entry.emotions or [],
        "confidence_level": entry.confidence_level,
        "strategy": entry.strategy,
        "time_frame": entry.time_frame,
        "trade_source": entry.trade_source,
    }


class JournalService:
    """Trade log sink for students and for drafts produced by the assistant."""

    def __init__(self, db: Session):
        self.db = db

    def log_draft(self, user_id: str, draft: DraftTradeEntry, pair: Optional[str] = None) -> JournalEntry:
        entry = JournalEntry(
            user_id=user_id,
            date=datetime.fromisoformat(draft.date),
            pair=pair,
            type=draft.type,
            status="open",
            notes=draft.notes,
            validation_result=draft.validation_result,
            screenshot_url=draft.screenshot_url,
            trade_source="assistant",
        )
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def create_entry(self, user_id: str, **fields) -> JournalEntry:
        entry = JournalEntry(user_id=user_id, **{k: v for k, v in fields.items() if k in UPDATABLE_FIELDS})
        if fields.get("date"):
            entry.date = fields["date"]
        self._fill_pnl(entry)
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def update_entry(self, entry_id: int, **updates) -> Optional[JournalEntry]:
        entry = self.get_entry(entry_id)
        if not entry:
            return None
        for field in UPDATABLE_FIELDS:
            if updates.get(field) is not None:
                setattr(entry, field, updates[field])
        if updates.get("pnl") is None and any(updates.get(f) is not None for f in PNL_INPUTS):
            entry.pnl = None
        self._fill_pnl(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def _fill_pnl(self, entry: JournalEntry):
        # Closing a trade without an explicit PnL derives it from the prices
        if entry.status == "closed" and entry.pnl is None and entry.entry_price and entry.exit_price:
            entry.pnl = compute_pnl(entry.type, entry.entry_price, entry.exit_price, entry.position_size)

    def get_entry(self, entry_id: int) -> Optional[JournalEntry]:
        return self.db.query(JournalEntry).filter(JournalEntry.id == entry_id).first()

    def get_user_entries(self, user_id: str, limit: int = 100) -> List[JournalEntry]:
        return self.db.query(JournalEntry).filter(
            JournalEntry.user_id == user_id
        ).order_by(JournalEntry.date.desc()).limit(limit).all()

    def get_all_entries(self, limit: int = 500) -> List[JournalEntry]:
        return self.db.query(JournalEntry).order_by(JournalEntry.date.desc()).limit(limit).all()

    def delete_entry(self, entry_id: int) -> bool:
        entry = self.get_entry(entry_id)
        if not entry:
            return False
        self.db.delete(entry)
        self.db.commit()
        return True
