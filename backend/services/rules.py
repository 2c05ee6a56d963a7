import logging
from typing import Callable, List, NamedTuple, Optional
from sqlalchemy import event, or_
from sqlalchemy.orm import Session
from backend.models import TradeRule

logger = logging.getLogger("RuleRepository")


class RuleChange(NamedTuple):
    event: str  # "INSERT", "UPDATE", "DELETE"
    rule_id: int
    user_id: Optional[str]


_listeners: List[Callable[[RuleChange], None]] = []


def subscribe(listener: Callable[[RuleChange], None]) -> Callable[[], None]:
    """Registers a listener for committed rule changes. Returns an unsubscribe callable."""
    _listeners.append(listener)

    def unsubscribe():
        if listener in _listeners:
            _listeners.remove(listener)

    return unsubscribe


def publish(change: RuleChange):
    for listener in list(_listeners):
        try:
            listener(change)
        except Exception as e:
            logger.error(f"Rule change listener failed on {change.event} {change.rule_id}: {e}")


# --- Change tracking ---
# Collected per flush (ids are assigned by then), published only after commit.

@event.listens_for(Session, "after_flush")
def _collect_rule_changes(session, flush_context):
    pending = session.info.setdefault("rule_changes", [])
    for obj in session.new:
        if isinstance(obj, TradeRule):
            pending.append(RuleChange("INSERT", obj.id, obj.user_id))
    for obj in session.dirty:
        if isinstance(obj, TradeRule) and session.is_modified(obj, include_collections=False):
            pending.append(RuleChange("UPDATE", obj.id, obj.user_id))
    for obj in session.deleted:
        if isinstance(obj, TradeRule):
            pending.append(RuleChange("DELETE", obj.id, obj.user_id))


@event.listens_for(Session, "after_commit")
def _publish_rule_changes(session):
    changes = session.info.pop("rule_changes", [])
    for change in changes:
        logger.info(f"📣 Rule {change.event}: {change.rule_id}")
        publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_rule_changes(session):
    session.info.pop("rule_changes", None)


def rule_to_dict(rule: TradeRule) -> dict:
    return {
        "id": rule.id,
        "user_id": rule.user_id,
        "text": rule.text,
        "type": rule.type,
        "required": rule.required,
        "order_number": rule.order_number,
    }


class RuleRepository:
    def __init__(self, db: Session):
        self.db = db

    def fetch_user_rules(self, user_id: str) -> List[TradeRule]:
        """The student's own rules plus global ones, in display order."""
        return self.db.query(TradeRule).filter(
            or_(TradeRule.user_id == user_id, TradeRule.user_id.is_(None))
        ).order_by(TradeRule.order_number.asc(), TradeRule.id.asc()).all()

    def get_all_rules(self) -> List[TradeRule]:
        return self.db.query(TradeRule).order_by(TradeRule.order_number.asc(), TradeRule.id.asc()).all()

    def get_rule(self, rule_id: int) -> Optional[TradeRule]:
        return self.db.query(TradeRule).filter(TradeRule.id == rule_id).first()

    def create_rule(
        self,
        text: str,
        type: str = "general",
        required: bool = True,
        user_id: Optional[str] = None,
        order_number: Optional[int] = None
    ) -> TradeRule:
        if order_number is None:
            # Append after the owner's last rule
            order_number = self.db.query(TradeRule).filter(TradeRule.user_id == user_id).count()
        rule = TradeRule(text=text, type=type, required=required, user_id=user_id, order_number=order_number)
        self.db.add(rule)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def update_rule(self, rule_id: int, **updates) -> Optional[TradeRule]:
        rule = self.get_rule(rule_id)
        if not rule:
            return None
        for field in ("text", "type", "required", "order_number"):
            if updates.get(field) is not None:
                setattr(rule, field, updates[field])
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def delete_rule(self, rule_id: int) -> bool:
        rule = self.get_rule(rule_id)
        if not rule:
            return False
        self.db.delete(rule)
        self.db.commit()
        return True
